"""Entry point for ``python -m esign_workflow``"""

from esign_workflow.cli.main import app

if __name__ == "__main__":
    app()
