"""Main Typer application: registers all CLI commands.

Entry point: ``deployline`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from deployline.cli.commands.demo import demo_cmd
from deployline.cli.commands.history import history_cmd, show_cmd
from deployline.cli.commands.run import run_cmd
from deployline.cli.commands.verify import verify_cmd
from deployline.config import Settings, configure_logging

app = typer.Typer(
    name="deployline",
    help="Deployline: staged build-and-deploy pipelines with health-gated rollouts.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def _setup(
    log_level: str = typer.Option(
        None, "--log-level", help="Override DEPLOYLINE_LOG_LEVEL."
    ),
) -> None:
    settings = Settings()
    if log_level:
        settings = settings.model_copy(update={"log_level": log_level})
    configure_logging(settings)


app.command(name="demo", help="Run the reference delivery pipeline against in-memory backends.")(demo_cmd)
app.command(name="run", help="Run a pipeline from a TOML or JSON definition.")(run_cmd)
app.command(name="history", help="List executions of a pipeline.")(history_cmd)
app.command(name="show", help="Show one execution: stages, status and diagnostics.")(show_cmd)
app.command(name="verify", help="Verify the execution log hash chain of a pipeline.")(verify_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
