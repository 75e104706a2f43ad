"""
Caller authentication.

Tokens are issued by the external auth provider; this module only verifies
them and extracts the account id.
"""

import logging
from typing import Optional

from jose import JWTError, jwt

from .errors import Unauthorized

logger = logging.getLogger(__name__)


class TokenAuthenticator:
    """Verifies `Bearer <jwt>` credentials signed with a shared secret."""

    def __init__(
        self,
        secret: str,
        audience: Optional[str] = "authenticated",
        algorithms: Optional[list] = None,
    ):
        if not secret:
            raise ValueError("secret is required and cannot be empty")
        self.secret = secret
        self.audience = audience
        self.algorithms = algorithms or ["HS256"]

    def authenticate(self, authorization: Optional[str]) -> str:
        """Return the account id for an Authorization header value.

        Raises:
            Unauthorized: If the header is missing, malformed or the token
                does not verify
        """
        if not authorization or not authorization.startswith("Bearer "):
            raise Unauthorized("Missing authorization header")

        token = authorization[len("Bearer "):].strip()
        options = {} if self.audience else {"verify_aud": False}
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=self.algorithms,
                audience=self.audience,
                options=options,
            )
        except JWTError as e:
            logger.debug("Token rejected: %s", e)
            raise Unauthorized("Invalid token")

        account_id = claims.get("sub")
        if not account_id:
            raise Unauthorized("Invalid token")
        return str(account_id)
