"""
HTML templates for the browser-facing OAuth2 endpoints.
Uses Jinja2 templates; the only page is the terminal error page.
"""

from pathlib import Path

from jinja2 import Environment, FileSystemLoader

# Set up Jinja2 environment
_template_dir = Path(__file__).parent / "templates"
_env = Environment(
    loader=FileSystemLoader(_template_dir),
    autoescape=True,
)

_TITLES = {
    "invalid_request": "Invalid request",
    "invalid_client": "Unknown application",
    "invalid_redirect_uri": "Invalid redirect URI",
    "invalid_scope": "Invalid scope",
    "invalid_state": "Sign-in expired",
    "unsupported_response_type": "Unsupported response type",
    "authentication_failed": "Sign-in failed",
    "server_error": "Something went wrong",
}


def error_page(error: str, error_description: str = "", service_name: str = "") -> str:
    """Generate an error page HTML."""
    template = _env.get_template("error.jinja2")
    return template.render(
        title=_TITLES.get(error, "Authorization error"),
        error=error,
        error_description=error_description,
        service_name=service_name,
    )
