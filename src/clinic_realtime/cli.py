from __future__ import annotations

import json

import click

from clinic_realtime import __version__
from clinic_realtime.config import get_safe_config_report


@click.group(help="Clinic realtime notification service.")
@click.version_option(__version__, prog_name="clinic-realtime")
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this process.")
def cli(log_level: str | None) -> None:
    if log_level:
        from clinic_realtime.utils.log import set_log_level

        set_log_level(log_level)


@cli.command(name="serve")
@click.option("--host", default=None, help="Bind address (default: HOST).")
@click.option("--port", type=int, default=None, help="Bind port (default: PORT).")
def serve(host: str | None, port: int | None) -> None:
    """Run the notification web service."""
    from clinic_realtime.web.run import main

    main(host=host, port=port)


@cli.command(name="show-config")
def show_config() -> None:
    """Print the effective configuration with secrets masked."""
    click.echo(json.dumps(get_safe_config_report(), indent=2, sort_keys=True, default=str))


def main() -> None:  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
