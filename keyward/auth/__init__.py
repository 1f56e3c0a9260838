"""Request authentication: header extraction, key validation, FastAPI deps."""

from keyward.auth.authenticator import AuthContext, AuthOutcome, RequestAuthenticator
from keyward.auth.headers import extract_api_key

__all__ = ["AuthContext", "AuthOutcome", "RequestAuthenticator", "extract_api_key"]
