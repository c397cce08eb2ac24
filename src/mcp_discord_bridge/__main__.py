"""Allow `python -m mcp_discord_bridge` to run the CLI."""

from .cli import app


def main() -> None:
    app(prog_name="mcp-discord-bridge")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
