"""
auth/mailer.py -- Email rendering and the delivery collaborator.

Delivery is external: anything matching Mailer -- a callable taking
(to, subject, html) and returning True on success -- can be plugged into the
services. The default, log_mailer, only logs the recipient and subject, which
is what a development server wants. Bodies are never logged because they
contain live tokens.

Bodies are rendered from Jinja2 templates under auth/templates/ with
autoescaping on, so an attacker-controlled display name cannot inject markup.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from jinja2 import Environment, FileSystemLoader, select_autoescape

logger = logging.getLogger("simpleauth.mailer")

Mailer = Callable[[str, str, str], bool]

_env = Environment(
    loader=FileSystemLoader(Path(__file__).parent / "templates"),
    autoescape=select_autoescape(["html"]),
)


def render_email(template_name: str, **context) -> str:
    return _env.get_template(template_name).render(**context)


def build_link(base: str, **params: str) -> str:
    """Append query parameters to base, keeping any it already has."""
    parts = urlsplit(base)
    query = dict(parse_qsl(parts.query))
    query.update(params)
    return urlunsplit(parts._replace(query=urlencode(query)))


def pick_link_base(requested: str | None, configured: str, default: str) -> str:
    """Choose the URL a token link points at.

    A caller-supplied URL is only honoured when its origin matches the
    configured one (or the default's). Otherwise an attacker could request a
    reset for a victim with their own redirect and receive the victim's token
    when the victim clicks the link.
    """
    fallback = configured or default
    if not requested:
        return fallback
    allowed = {_origin(u) for u in (configured, default) if u}
    if _origin(requested) in allowed:
        return requested
    logger.warning("Ignoring link base with foreign origin %s", _origin(requested))
    return fallback


def _origin(url: str) -> tuple[str, str]:
    parts = urlsplit(url)
    return parts.scheme.lower(), parts.netloc.lower()


def log_mailer(to: str, subject: str, html: str) -> bool:
    logger.info("Email to %s: %s (%d bytes, not delivered)", to, subject, len(html))
    return True


def send_email(mailer: Mailer, to: str, subject: str, html: str) -> bool:
    """Call the mailer and never let its failure escape.

    Token-request flows report success regardless of delivery, so a mailer
    exception is logged and turned into False.
    """
    try:
        sent = bool(mailer(to, subject, html))
    except Exception:
        logger.exception("Mailer raised while sending '%s'", subject)
        return False
    if not sent:
        logger.warning("Mailer reported failure sending '%s'", subject)
    return sent
