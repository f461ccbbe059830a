# Main entry point - runs the local API server the Keynotes UI talks to.
#
# Settings come from KEYNOTES_* environment variables (or a .env file);
# command line flags override them.

import argparse
import logging
import sys
from pathlib import Path

from . import __version__
from .config import KeynotesConfig
from .core import EventSeverity, EventType, get_audit_logger


def main():
    parser = argparse.ArgumentParser(
        description="Keynotes - local-first encrypted vault for notes, keys and passwords",
    )
    parser.add_argument("--host", help="API host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, help="API port (default: 8000)")
    parser.add_argument("--data-dir", type=Path, help="Directory for keynotes.db")
    parser.add_argument("--env-file", type=Path, help="Load settings from this .env file")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument("--version", action="version", version=f"Keynotes v{__version__}")

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = KeynotesConfig.from_env(args.env_file)
    if args.host:
        config.api_host = args.host
    if args.port:
        config.api_port = args.port
    if args.data_dir:
        config.data_dir = args.data_dir

    from .api.main import start_api_server
    from .api.services import services

    services.configure(config)

    try:
        start_api_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        print("\nShutting down...")
    except Exception as e:
        get_audit_logger().log_event(
            event_type=EventType.SYSTEM_STOP,
            severity=EventSeverity.CRITICAL,
            message=f"Keynotes server crashed: {e}",
        )
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
