"""CLI entry point."""

from __future__ import annotations

import asyncio

import rich_click as click

from duckgate.frontends.cli.ratelimit import ratelimit

# Configure rich-click styling
click.rich_click.USE_RICH_MARKUP = True
click.rich_click.USE_MARKDOWN = True
click.rich_click.SHOW_ARGUMENTS = True
click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
click.rich_click.ERRORS_SUGGESTION = "Try running '--help' for more information."
click.rich_click.ERRORS_EPILOGUE = ""
click.rich_click.MAX_WIDTH = 100


# =========================================================================
# Root CLI
# =========================================================================
@click.group()
@click.version_option(package_name="duckgate")
def cli():
    """Duckgate - OpenAI-compatible gateway for DuckDuckGo AI chat.

    **Commands:**

        duckgate serve        Run the gateway server

        duckgate ratelimit    Inspect the shared rate-limit state
    """
    pass


cli.add_command(ratelimit)


@cli.command()
@click.option("--host", default=None, help="Host to bind (default 127.0.0.1)")
@click.option("--port", "-p", default=None, type=int, help="Port to listen on (default 3264)")
@click.option("--config", "-c", "config_file", default=None, help="YAML config file")
@click.option("--upstream-url", default=None, help="Upstream chat API base URL")
@click.option("--debug-dir", default=None, help="Directory for per-request debug dumps")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level",
)
@click.option(
    "--log-format",
    default=None,
    type=click.Choice(["text", "json"]),
    help="Log output format",
)
def serve(
    host: str | None,
    port: int | None,
    config_file: str | None,
    upstream_url: str | None,
    debug_dir: str | None,
    log_level: str | None,
    log_format: str | None,
):
    """Run the gateway server.

    Serves `/v1/chat/completions`, `/v1/models` and `/v1/rate-limit`.

    **Examples:**

        duckgate serve

        duckgate serve --port 8080 --log-level DEBUG

        duckgate serve --config gateway.yaml
    """
    from duckgate.core.logging_config import configure_logging
    from duckgate.gateway.config import load_config
    from duckgate.gateway.openai_server import GatewayServer

    configure_logging(level=log_level, format=log_format)  # type: ignore[arg-type]

    config = load_config(
        config_file,
        host=host,
        port=port,
        upstream_base_url=upstream_url,
        debug_dir=debug_dir,
    )
    server = GatewayServer(config=config)

    click.echo(f"Starting duckgate on http://{config.host}:{config.port}")
    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        click.echo("Stopped")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
