"""Entry point for running mailpilot as a module.

Usage:
    python -m mailpilot validate-config
    python -m mailpilot --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any imports that read secrets

from mailpilot.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
