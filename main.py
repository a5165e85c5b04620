# main.py
import argparse
import asyncio
import sys
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def setup_logging(level='INFO', log_to_file=True, max_bytes=5 * 1024 * 1024, backup_count=5):
    """Configures console and rotating file logging"""
    from core.config_manager import get_app_data_dir
    from logging.handlers import RotatingFileHandler

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers = [console_handler]

    if log_to_file:
        logs_dir = get_app_data_dir() / "logs"
        logs_dir.mkdir(exist_ok=True)

        file_handler = RotatingFileHandler(
            logs_dir / "zhwiki_proxy.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )


def setup_exception_handler():
    """Logs uncaught exceptions"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Uncaught exception:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


def parse_listen(arg: str):
    if ":" not in arg:
        raise argparse.ArgumentTypeError("Expected HOST:PORT")

    host, port_str = arg.rsplit(":", 1)

    try:
        port = int(port_str)
    except ValueError:
        raise argparse.ArgumentTypeError("Invalid port")

    return host or '0.0.0.0', port


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Forward HTTP proxy with CONNECT tunnelling")
    parser.add_argument(
        "--listen",
        type=parse_listen,
        help="Address and port to listen on (HOST:PORT), default from config (0.0.0.0:8080)",
    )
    parser.add_argument("--config", type=Path, help="Path to config.json")
    parser.add_argument("--log-level", help="Logging level, e.g. DEBUG")
    parser.add_argument("--no-log-file", action="store_true", help="Log to the console only")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    from core.config_manager import get_config

    config = get_config(args.config)
    if args.listen:
        host, port = args.listen
        config.set('server.host', host)
        config.set('server.port', port)

    log_config = config.get_logging_config()
    setup_logging(
        level=args.log_level or log_config.get('level', 'INFO'),
        log_to_file=log_config.get('file', True) and not args.no_log_file,
        max_bytes=log_config.get('max_bytes', 5 * 1024 * 1024),
        backup_count=log_config.get('backup_count', 5),
    )
    setup_exception_handler()

    from core.proxy_manager import ProxyManager

    proxy = ProxyManager(config)
    logger.info(f"🚀 Starting proxy on {proxy.server_settings.host}:{proxy.server_settings.port}")

    try:
        asyncio.run(proxy.run())
    except OSError as e:
        logger.critical(f"❌ Server failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("🛑 Shutting down proxy")

    return 0


if __name__ == "__main__":
    sys.exit(main())
