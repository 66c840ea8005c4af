"""
API token authentication for Flask-Login.

Clients send "Authorization: Bearer <API_TOKEN>". There are no user accounts;
a valid token logs the request in as the single API operator.
"""

import hmac

from flask import current_app
from flask_login import UserMixin


class ApiOperator(UserMixin):
    """Flask-Login identity for a request carrying a valid API token."""

    id = 'api'

    def get_id(self):
        return self.id


def extract_bearer_token(header_value) -> str:
    """Token from an Authorization header value, or '' if it is not a Bearer header."""
    if not header_value:
        return ''
    scheme, _, token = header_value.partition(' ')
    if scheme.lower() != 'bearer':
        return ''
    return token.strip()


def verify_token(token: str) -> bool:
    """
    Compare a presented token with API_TOKEN.

    Returns False when no API_TOKEN is configured, so an unconfigured server
    rejects every request.
    """
    expected = current_app.config.get('API_TOKEN')
    if not expected or not token:
        return False
    return hmac.compare_digest(token.encode('utf-8'), expected.encode('utf-8'))


def load_operator_from_request(request):
    """Flask-Login request_loader callback."""
    token = extract_bearer_token(request.headers.get('Authorization'))
    if verify_token(token):
        return ApiOperator()
    return None
