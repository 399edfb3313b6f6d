"""Entry freshness token utilities

A ticket holder's wallet app renders a QR code carrying a short-lived signed
token. The token binds the ticket id to the moment the code was generated, so
screenshots stop working once the freshness window has passed.

Uses HMAC-SHA256 signing to prevent tampering.
"""
import base64
import hashlib
import hmac
import time
from typing import Optional
from urllib.parse import quote, unquote

from ticketgate.core.config import settings
from ticketgate.core.errors import InvalidEntryCredential

ACCESS_TOKEN_TYPE = "ACCESS"


def _sign(message: str, secret: str) -> str:
    signature = hmac.new(secret.encode(), message.encode(), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(signature).decode().rstrip('=')


def generate_entry_token(ticket_id: int, generated_ms: Optional[int] = None) -> str:
    """Generate a signed freshness token for a ticket

    Args:
        ticket_id: Ticket the token admits
        generated_ms: Generation time in epoch milliseconds (defaults to now)

    Returns:
        URL-encoded token ``ACCESS:{ticket_id}:{generated_ms}:{signature}``

    Raises:
        ValueError: If ENTRY_TOKEN_SECRET is not set
    """
    secret = settings.ENTRY_TOKEN_SECRET
    if not secret:
        raise ValueError("ENTRY_TOKEN_SECRET environment variable is required")

    if generated_ms is None:
        generated_ms = int(time.time() * 1000)
    message = f"{ACCESS_TOKEN_TYPE}:{ticket_id}:{generated_ms}"
    return quote(f"{message}:{_sign(message, secret)}")


def verify_entry_token(token: str, ticket_id: int) -> int:
    """Verify a freshness token and return its embedded generation time

    Freshness itself is not checked here; the admission controller compares
    the returned timestamp against its window.

    Args:
        token: The token to verify (URL-encoded)
        ticket_id: Ticket id the scan request claims

    Returns:
        Generation time in epoch milliseconds

    Raises:
        InvalidEntryCredential: Bad format, wrong type, ticket mismatch or bad signature
    """
    secret = settings.ENTRY_TOKEN_SECRET
    if not secret:
        raise InvalidEntryCredential("Entry tokens are not configured")

    parts = unquote(token).split(':')
    if len(parts) != 4:
        raise InvalidEntryCredential("Malformed entry token")

    token_type, token_ticket_id, generated_ms, signature_b64 = parts
    if token_type != ACCESS_TOKEN_TYPE:
        raise InvalidEntryCredential("Not an access token")

    try:
        token_ticket = int(token_ticket_id)
        generated = int(generated_ms)
    except ValueError as e:
        raise InvalidEntryCredential("Malformed entry token") from e
    if token_ticket != ticket_id:
        raise InvalidEntryCredential("Token was issued for a different ticket")

    expected = _sign(f"{token_type}:{token_ticket_id}:{generated_ms}", secret)
    # Constant-time comparison
    if not hmac.compare_digest(signature_b64, expected):
        raise InvalidEntryCredential("Invalid token signature")

    return generated
