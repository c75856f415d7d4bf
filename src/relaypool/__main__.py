import argparse
import logging
import sys

from .config import Settings
from .errors import ConfigurationError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="relaypool", description="API key pool proxy")
    parser.add_argument("--env-file", default=".env", help="optional .env file (default: .env)")
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_env(env_path=args.env_file)
    except ConfigurationError as e:
        print(f"relaypool: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO), format=LOG_FORMAT)

    import uvicorn  # noqa: PLC0415

    from .app import create_app  # noqa: PLC0415
    from .balancer import KeyBalancer  # noqa: PLC0415

    # Fail fast on an empty key source instead of at the first request
    try:
        balancer = KeyBalancer.from_settings(settings)
    except ConfigurationError as e:
        logging.getLogger("relaypool").error(str(e))
        return 2

    uvicorn.run(create_app(settings, balancer), host=settings.host, port=settings.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
