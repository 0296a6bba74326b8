"""Init command implementation"""

from pathlib import Path

from rich.console import Console
from rich.panel import Panel

from esign_workflow.db.supabase import get_database
from esign_workflow.utils.config import get_settings

console = Console()


def init_command():
    """Initialize the database and local document storage"""
    settings = get_settings()
    console.print(Panel.fit(
        "[bold blue]Initializing Contract Signature Workflow[/bold blue]",
        border_style="blue"
    ))

    console.print(f"\n[yellow]1. Initializing {settings.db_mode} database...[/yellow]")
    try:
        get_database(settings.db_mode).init_db()
        console.print("[green]   [OK] Database initialized[/green]")
    except Exception as e:
        console.print(f"[red]   [FAIL] Failed to initialize database: {e}[/red]")
        return

    console.print("\n[yellow]2. Preparing document storage...[/yellow]")
    if settings.db_mode == "supabase":
        console.print(f"[green]   [OK] Using bucket '{settings.supabase_bucket}'[/green]")
    else:
        try:
            Path(settings.documents_dir).mkdir(parents=True, exist_ok=True)
            console.print(f"[green]   [OK] Documents stored in {settings.documents_dir}[/green]")
        except OSError as e:
            console.print(f"[red]   [FAIL] Cannot create {settings.documents_dir}: {e}[/red]")
            return

    console.print(Panel.fit(
        "[bold green][OK] Initialization complete![/bold green]\n\n"
        "Next steps:\n"
        "1. Start the API: [cyan]python -m esign_workflow serve[/cyan]\n"
        "2. Or run the worker alone: [cyan]python -m esign_workflow worker[/cyan]",
        border_style="green"
    ))
