"""
auth/errors.py -- Domain exceptions for authentication and access control.

Every exception carries a stable machine-readable code and an HTTP status
hint. auth/dependencies.py turns them into HTTPException with the same
{"code", "message"} detail shape the API layer uses everywhere.

Messages are deliberately generic where secrecy matters: InvalidCredentials
never says whether the account exists, InvalidOrExpiredLink never says which
check failed. Forbidden may list missing requirements -- the caller is
already authenticated, so this is not a secrecy boundary.
"""

from __future__ import annotations


class AuthError(Exception):
    code = "auth_error"
    status_code = 401
    default_message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "bad_credentials"
    default_message = "Invalid email or password."


class AccountLocked(AuthError):
    code = "account_locked"
    status_code = 403

    def __init__(self, minutes_remaining: int) -> None:
        self.minutes_remaining = minutes_remaining
        super().__init__(f"Account temporarily locked. Try again in {minutes_remaining} minutes.")


class InvalidOrExpiredLink(AuthError):
    code = "invalid_link"
    default_message = "Invalid or expired link."


class InvalidRefreshToken(AuthError):
    code = "invalid_refresh_token"
    default_message = "Invalid refresh token."


class Forbidden(AuthError):
    code = "forbidden"
    status_code = 403
    default_message = "You do not have permission to access this resource."


class RegistrationError(AuthError):
    code = "registration_error"
    status_code = 400
    default_message = "Registration failed."


class WeakPassword(AuthError):
    code = "weak_password"
    status_code = 400
    default_message = "Password does not meet the password policy."
