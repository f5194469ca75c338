"""
Command-line interface for BillFlow authentication.
"""

from __future__ import annotations

import asyncio
import logging

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from billflow.auth import (
    AuthMode,
    AuthPageController,
    BackendError,
    FactorRegistry,
    SessionManager,
    UserRole,
    password_strength,
    strength_label,
)
from billflow.backend import LocalCredentialAdapter
from billflow.config import ConfigurationError, create_adapter, get_settings

app = typer.Typer(
    name="billflow",
    help="BillFlow - sign in, register and manage two-factor authentication",
)
console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show auth layer logs")):
    """Configure logging."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


async def _open_page() -> tuple[AuthPageController, list[str]]:
    try:
        settings = get_settings()
        adapter = await create_adapter(settings)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(2)
    session = SessionManager(adapter, call_timeout=settings.call_timeout)
    redirects: list[str] = []
    page = AuthPageController(
        session,
        FactorRegistry(adapter, call_timeout=settings.call_timeout),
        navigate=redirects.append,
        redirect_to=settings.redirect_to,
    )
    await session.hydrate()
    return page, redirects


def _report(page: AuthPageController) -> None:
    if page.error:
        console.print(f"[red]{page.error}[/red]")
    elif page.success:
        console.print(f"[green]{page.success}[/green]")


async def _answer_challenge(page: AuthPageController) -> None:
    """Prompt for codes until the MFA form goes away."""
    while page.visible_form == AuthMode.MFA_VERIFY:
        factors = page.available_factors
        factor_id = None
        if len(factors) > 1:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("#")
            table.add_column("Method")
            for i, factor in enumerate(factors, 1):
                table.add_row(str(i), factor.label)
            console.print(table)
            choice = typer.prompt("Choose MFA method", default=1, type=int)
            factor_id = factors[max(1, min(choice, len(factors))) - 1].id
        code = typer.prompt("Verification code")
        await page.handle_mfa_verify(code, factor_id)
        _report(page)


@app.command()
def signup(
    email: str = typer.Option(..., prompt=True),
    first_name: str = typer.Option(..., prompt=True),
    last_name: str = typer.Option(..., prompt=True),
    company: str = typer.Option(..., prompt="Company name"),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
):
    """Create an account and its merchant record."""

    async def _signup():
        page, _ = await _open_page()
        page.set_mode(AuthMode.SIGNUP)
        form = page.form
        form.email, form.first_name, form.last_name, form.company_name = email, first_name, last_name, company
        form.password = form.confirm_password = password
        console.print(f"Password strength: [bold]{strength_label(form.password_strength)}[/bold]")
        await page.handle_sign_up()
        _report(page)
        await page.session.adapter.close()
        if page.error:
            raise typer.Exit(1)

    asyncio.run(_signup())


@app.command()
def signin(
    email: str = typer.Option(..., prompt=True),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    setup_mfa: bool = typer.Option(False, "--setup-mfa", help="Enroll an authenticator app after signing in"),
):
    """Sign in, answering a TOTP challenge when one is issued."""

    async def _signin():
        page, redirects = await _open_page()
        try:
            page.form.email, page.form.password = email, password
            await page.handle_sign_in()
            _report(page)
            await _answer_challenge(page)

            if not redirects:
                raise typer.Exit(1)
            user = page.session.snapshot.user
            console.print(f"Signed in as [bold]{user.email}[/bold] -> {redirects[0]}")

            if setup_mfa:
                page.set_mode(AuthMode.MFA_SETUP)
                await page.handle_mfa_setup()
                _report(page)
                if page.error:
                    raise typer.Exit(1)
                console.print(f"Secret: [bold]{page.totp_secret}[/bold]")
                console.print(f"URI: {page.qr_code}")
                code = typer.prompt("Code from your authenticator app")
                await page.handle_mfa_setup_verify(code)
                _report(page)
        finally:
            await page.session.adapter.close()

    asyncio.run(_signin())


@app.command()
def invite(
    invitee: str = typer.Option(..., prompt="Email to invite"),
    role: UserRole = typer.Option(UserRole.EMPLOYEE, help="Role granted on acceptance"),
    email: str = typer.Option(..., prompt="Your email"),
    password: str = typer.Option(..., prompt=True, hide_input=True),
):
    """Invite a team member into your merchant account (local backend)."""

    async def _invite():
        page, redirects = await _open_page()
        try:
            adapter = page.session.adapter
            if not isinstance(adapter, LocalCredentialAdapter):
                console.print("[red]Invitations for the hosted backend are sent from the BillFlow dashboard.[/red]")
                raise typer.Exit(1)
            page.form.email, page.form.password = email, password
            await page.handle_sign_in()
            _report(page)
            await _answer_challenge(page)
            if not redirects:
                raise typer.Exit(1)
            try:
                token = await adapter.invite_user(invitee, role)
            except BackendError as e:
                console.print(f"[red]{e.message}[/red]")
                raise typer.Exit(1)
            console.print(f"Invitation token: {token}")
        finally:
            await page.session.adapter.close()

    asyncio.run(_invite())


@app.command("accept-invite")
def accept_invite(
    token: str = typer.Option(..., prompt=True),
    email: str = typer.Option(..., prompt=True),
    display_name: str = typer.Option(..., prompt=True),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
):
    """Join a merchant account from an invitation and sign in."""

    async def _accept():
        page, redirects = await _open_page()
        try:
            page.set_mode(AuthMode.ACCEPT_INVITE)
            form = page.form
            form.display_name = display_name
            form.password = form.confirm_password = password
            await page.handle_accept_invite(token, email)
            _report(page)
            await _answer_challenge(page)
            if redirects:
                console.print(f"Signed in as [bold]{page.session.snapshot.user.email}[/bold] -> {redirects[0]}")
            elif page.error:
                raise typer.Exit(1)
        finally:
            await page.session.adapter.close()

    asyncio.run(_accept())


@app.command()
def strength(password: str = typer.Option(..., prompt=True, hide_input=True)):
    """Score a password the way sign-up does."""
    score = password_strength(password)
    console.print(f"{score}/5 [bold]{strength_label(score)}[/bold]")


if __name__ == "__main__":
    app()
