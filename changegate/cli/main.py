"""changegate CLI — Entry point.

Usage:
    changegate gate run <change_set>
    changegate gate invalidate <change_set>
    changegate gate publish-test-signal <change_set> <repository>
    changegate gate status <change_set>
    changegate pipeline show
    changegate pipeline validate
"""

from __future__ import annotations

import typer

from changegate.cli.commands import gate, pipeline

app = typer.Typer(
    name="changegate",
    help="changegate — Multi-repository build orchestration with a transactional merge gate.",
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)

app.add_typer(gate.app, name="gate")
app.add_typer(pipeline.app, name="pipeline")


@app.callback()
def main_callback() -> None:
    pass


if __name__ == "__main__":
    app()
