import argparse
import asyncio
import os
import shutil
import sys
from collections import Counter

from . import config as config_lib
from .logging import setup_logging
from .queue import JobStatus
from .store import JobStore, create_tables


def check_upscaler(settings) -> bool:
    """Verify the upscaler executable and its models directory exist."""
    ok = True
    exe = settings.upscale.executable
    resolved = shutil.which(exe) or (exe if os.access(exe, os.X_OK) else None)
    if resolved:
        print(f"✅ upscaler found: {resolved}")
    else:
        print(f"❌ upscaler NOT found: {exe}")
        ok = False

    if os.path.isdir(settings.upscale.models_path):
        print(f"✅ models directory found: {settings.upscale.models_path}")
    else:
        print(f"❌ models directory NOT found: {settings.upscale.models_path}")
        ok = False
    return ok


async def _status_counts(database_url: str) -> Counter:
    store = JobStore(database_url)
    await store.connect()
    try:
        return Counter(record.status for record in await store.list_all())
    finally:
        await store.disconnect()


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="upscaler", description="Image fetch and upscale job service"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", type=str, help="Interface to bind")
    serve_parser.add_argument("--port", "-p", type=int, help="Listening port")
    serve_parser.add_argument("--log-level", type=str, help="DEBUG, INFO, WARNING, ERROR")

    # CHECK
    subparsers.add_parser("check", help="Verify the upscaler executable and models")

    # INIT-DB
    subparsers.add_parser("init-db", help="Create the job table")

    # STATUS
    subparsers.add_parser("status", help="Show job counts per status")

    args = parser.parse_args(argv)
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    settings = config_lib.resolve_config(cli_dict)

    if args.command == "serve":
        import uvicorn

        from .api.main import create_app

        setup_logging(settings.logging.level, settings.logging.json_format)
        uvicorn.run(
            create_app(settings),
            host=settings.server.host,
            port=settings.server.port,
            log_config=None,
        )

    elif args.command == "check":
        print("Checking dependencies...")
        if not check_upscaler(settings):
            sys.exit(1)

    elif args.command == "init-db":
        print("Creating tables...")
        create_tables(settings.storage.database_url)
        print("Tables created.")

    elif args.command == "status":
        counts = asyncio.run(_status_counts(settings.storage.database_url))
        print("\n" + "=" * 60)
        print("JOB STATUS")
        print("=" * 60)
        for status in JobStatus:
            print(f"{status.value.capitalize() + ':':<22}{counts.get(status, 0)}")
        print(f"{'Total:':<22}{sum(counts.values())}")
        print("=" * 60)

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
