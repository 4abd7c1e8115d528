# voteguard/security/token_manager.py
from datetime import timedelta
from flask_jwt_extended import create_access_token, decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError
from flask import current_app


# JWT access tokens carrying the caller's role claim for the exposed HTTP surface
class TokenManager:
    def generate_token(self, user_id: str, role: str, expires_in: int = 3600) -> str:
        expires_delta = timedelta(seconds=expires_in)
        return create_access_token(identity=str(user_id), additional_claims={'role': role},
                                   expires_delta=expires_delta)

    def decode(self, token: str):
        # Claims of a valid token, else None.
        try:
            return decode_token(token, allow_expired=False)
        except (PyJWTError, JWTExtendedException) as e:
            current_app.logger.warning(f"Token validation failed: {str(e)}")
            return None
