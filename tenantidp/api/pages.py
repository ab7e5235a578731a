"""
HTML rendering for the interactive login page.
"""

from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader

_template_dir = Path(__file__).parent / "templates"
_env = Environment(
    loader=FileSystemLoader(_template_dir),
    autoescape=True,
)


def login_page(
    *,
    action: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    response_type: str = "code",
    tenant_id: Optional[str] = None,
    state: Optional[str] = None,
    nonce: Optional[str] = None,
    client_name: str = "",
    email: str = "",
    error: str = "",
) -> str:
    """Render the login form; every echoed parameter is HTML-escaped."""
    template = _env.get_template("login.jinja2")
    return template.render(
        action=action,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        response_type=response_type,
        tenant_id=tenant_id or "",
        state=state or "",
        nonce=nonce or "",
        client_name=client_name,
        email=email,
        error=error,
    )
