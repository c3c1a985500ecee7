import argparse

from quotabar.config import Config


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="quotabar",
        description="AI usage quota monitor for metered and pay-as-you-go providers",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9186",
        help="Address for the metrics endpoint, empty to disable (default: :9186)",
    )
    parser.add_argument(
        "--refresh.interval",
        dest="refresh_interval",
        type=int,
        default=1800,
        help="Refresh interval in seconds (default: 1800)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Refresh every provider once and exit",
    )

    args = parser.parse_args(argv)
    config = Config.from_env()
    config.listen_address = args.listen_address
    config.refresh_interval = args.refresh_interval
    config.log_level = args.log_level
    config.once = args.once
    return config
