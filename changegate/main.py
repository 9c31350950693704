"""
changegate Main Entry Point

Usage:
    # Run the REST API (and the background expiry sweeper)
    changegate serve --config config/changegate.yaml

    # Create the database schema
    changegate init-db --db data/changegate.db

    # Expire stale pending changes once (e.g. from cron)
    changegate sweep --config config/changegate.yaml
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from changegate import __version__
from changegate.logging.logger import configure_logging, get_logger
from changegate.settings import EngineSettings


DEFAULT_LOGGING_CONFIG = Path(__file__).parent.parent / "config" / "logging.yaml"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog='changegate',
        description='Change approval and rollback engine',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('--version', action='version', version=f'changegate {__version__}')
    parser.add_argument(
        '--config',
        default=None,
        help='Engine configuration YAML (CHANGEGATE_* env vars override it)'
    )
    parser.add_argument(
        '--logging-config',
        default=str(DEFAULT_LOGGING_CONFIG),
        help='Logging dictConfig YAML'
    )
    parser.add_argument(
        '--log-level',
        default=None,
        help='Level of the changegate loggers (default: CHANGEGATE_LOG_LEVEL or the config)'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    serve = subparsers.add_parser('serve', help='Run the REST API')
    serve.add_argument('--host', default=None, help='Override server.host')
    serve.add_argument('--port', type=int, default=None, help='Override server.port')
    serve.add_argument('--no-sweeper', action='store_true', help='Do not expire stale changes in the background')

    init_db = subparsers.add_parser('init-db', help='Create the database schema')
    init_db.add_argument('--db', default=None, help='Override database_path')

    subparsers.add_parser('sweep', help='Expire stale pending changes once')

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for changegate.
    """
    args = parse_args(argv)

    try:
        configure_logging(args.logging_config, level=args.log_level)
    except ValueError as e:
        print(f"changegate: {e}", file=sys.stderr)
        return 2

    logger = get_logger(__name__, component_id="cli")

    try:
        settings = EngineSettings.load(args.config)
    except (OSError, ValueError, TypeError, yaml.YAMLError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    if args.command == 'init-db':
        from changegate.datastore import ChangeStore

        db_path = args.db or settings.database_path
        ChangeStore(db_path, secret_key=settings.audit_secret.encode('utf-8'))
        logger.info(f"Database initialized at {db_path}")
        return 0

    from changegate.controllers.change_controller import ChangeController
    controller = ChangeController(settings)

    if args.command == 'sweep':
        count = controller.expire_stale()
        logger.info(f"Expired {count} stale change(s)")
        return 0

    from changegate.communication.rest_server import ChangeRESTServer

    server = ChangeRESTServer(
        controller,
        host=args.host or settings.server.host,
        port=args.port or settings.server.port,
        enable_metrics=settings.metrics.enabled,
        metrics_port=settings.metrics.port
    )

    if not args.no_sweeper:
        controller.start()

    def shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        controller.stop()
        sys.exit(0)

    signal.signal(signal.SIGTERM, shutdown)

    logger.info(f"changegate v{__version__} starting")
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        controller.stop()

    return 0


if __name__ == "__main__":
    sys.exit(main())
