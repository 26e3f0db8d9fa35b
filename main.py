"""Entry point: serve the scheduler API with uvicorn."""

import os

import click
import uvicorn

from core.config import ENV_PREFIX, load_settings
from core.logging_config import setup_json_logging


@click.command()
@click.option("--config", "config_path", type=click.Path(exists=True),
              help="YAML settings file (default: scheduler.yaml).")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True)
def main(config_path: str | None, host: str, port: int) -> None:
    """Run the Tenant Scheduler API server."""
    if config_path:
        # api.server reads its settings at import time
        os.environ[f"{ENV_PREFIX}CONFIG"] = config_path
    settings = load_settings(config_path)
    setup_json_logging(settings.log_level)
    uvicorn.run("api.server:app", host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
