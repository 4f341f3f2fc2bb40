"""Allow `python -m tabtree_snapshot` to invoke the CLI."""

from .cli import app


def main() -> None:
    app(prog_name="tabtree-snapshot")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
