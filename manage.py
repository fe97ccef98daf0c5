"""Administrative commands: `python manage.py make-admin someone@example.com`."""

import typer
from pymongo.database import Database
from rich.console import Console
from rich.table import Table

import database
from auth import normalize_email, upsert_user
from database import USERS, ensure_indexes, utcnow
from schemas import Role

app = typer.Typer(help="Library backend administration")
console = Console()


def get_database() -> Database:
    return database.get_db()


def _print_user(user: dict) -> None:
    table = Table(show_header=False)
    table.add_row("Email", user["email"])
    table.add_row("Name", user.get("name") or "")
    table.add_row("Role", user.get("role", Role.USER.value))
    table.add_row("ID", str(user["_id"]))
    console.print(table)


@app.command("make-admin")
def make_admin(email: str = typer.Argument(..., help="Email of the user to promote")):
    """Grant the admin role, creating the user when it does not exist yet."""
    db = get_database()
    email = normalize_email(email)
    existing = db[USERS].find_one({"email": email})
    if existing and existing.get("role") == Role.ADMIN.value:
        console.print(f"[green]{email} is already an admin[/green]")
        _print_user(existing)
        return
    user = upsert_user(db, email, role=Role.ADMIN.value)
    verb = "updated to" if existing else "created as"
    console.print(f"[green]User {verb} admin[/green]")
    _print_user(user)


@app.command("remove-admin")
def remove_admin(email: str = typer.Argument(..., help="Email of the admin to demote")):
    """Drop the admin role from an existing user."""
    db = get_database()
    email = normalize_email(email)
    result = db[USERS].update_one(
        {"email": email},
        {"$set": {"role": Role.USER.value, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        console.print(f"[red]User not found: {email}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]Admin privileges removed from {email}[/green]")


@app.command("ensure-indexes")
def ensure_indexes_command():
    """Create the collection indexes the API relies on."""
    db = get_database()
    ensure_indexes(db)
    console.print(f"[green]Indexes ensured on {db.name}[/green]")


if __name__ == "__main__":
    app()
