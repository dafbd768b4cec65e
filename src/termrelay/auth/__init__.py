"""Identity validation for terminal sockets."""

from termrelay.auth.tokens import JwtTokenValidator, TokenValidator, issue_token

__all__ = ["JwtTokenValidator", "TokenValidator", "issue_token"]
