import argparse
import sys

from . import config as config_lib
from .errors import QueueConfigurationConflict, TransportUnavailable
from .jobs.models import QUEUE_FOR, dead_letter_names
from .logs import configure_logging
from .runtime import build_transport


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=str, help="YAML file overriding config/default.yaml")
    parser.add_argument(
        "--broker", choices=["rabbitmq", "memory"], help="Override broker backend"
    )
    parser.add_argument("--broker-host", type=str, help="Override RabbitMQ host")
    parser.add_argument("--broker-port", type=int, help="Override RabbitMQ port")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Override log level"
    )


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="filejobs", description="Asynchronous file transformation jobs"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API with in-process workers")
    _add_common_args(serve_parser)
    serve_parser.add_argument("--host", type=str, help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Bind port")
    serve_parser.add_argument("--storage-root", type=str, help="Directory for uploads/results")
    serve_parser.add_argument(
        "--no-workers", action="store_true", help="Accept jobs without consuming them"
    )

    # CHECK BROKER
    check_parser = subparsers.add_parser("check", help="Verify broker and declare queues")
    _add_common_args(check_parser)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    # Convert args to dict, filtering None and the subcommand itself
    cli_dict = {
        k: v for k, v in vars(args).items() if v is not None and k not in ("command", "config")
    }
    config = config_lib.resolve_config(cli_dict, config_path=args.config)
    configure_logging(config.logging.level)

    if args.command == "serve":
        import uvicorn

        from .api.main import create_app

        uvicorn.run(create_app(config), host=config.api.host, port=config.api.port)

    elif args.command == "check":
        print("Checking broker...")
        transport = build_transport(config.broker)
        try:
            for queue_name in sorted(set(QUEUE_FOR.values())):
                transport.ensure_queue(queue_name)
                print(f"✅ {queue_name} (dead-letter: {dead_letter_names(queue_name)['queue']})")
        except TransportUnavailable as e:
            print(f"❌ Broker unavailable: {e}")
            sys.exit(1)
        except QueueConfigurationConflict as e:
            print(f"❌ {e}")
            sys.exit(2)
        finally:
            transport.close()


if __name__ == "__main__":
    main()
