import logging
import os
from typing import Optional

from dotenv import load_dotenv
from jose import jwt, JWTError
from supabase import create_client, Client

load_dotenv()

logger = logging.getLogger(__name__)

SUPABASE_URL = os.environ.get("SUPABASE_URL")
SUPABASE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")  # Use service role for backend
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY")
SUPABASE_JWT_SECRET = os.environ.get("SUPABASE_JWT_SECRET")  # JWT secret for token verification

_client: Optional[Client] = None


def get_supabase() -> Optional[Client]:
    """Get the Supabase client instance, creating it on first use."""
    global _client
    if _client is not None:
        return _client

    if not SUPABASE_URL:
        logger.warning("SUPABASE_URL not set. Supabase features will be disabled.")
        return None

    # Service role key if available (full access), otherwise anon key
    key_to_use = SUPABASE_KEY or SUPABASE_ANON_KEY
    if not key_to_use:
        logger.warning("No Supabase key found. Supabase features will be disabled.")
        return None

    _client = create_client(SUPABASE_URL, key_to_use)
    return _client


def verify_supabase_token(token: str) -> Optional[dict]:
    """
    Read the claims of a Supabase JWT and return the caller identity.

    With SUPABASE_JWT_SECRET set, the signature, expiry and audience are
    verified; otherwise the claims are read unverified.
    Returns None if the token cannot be decoded or has no subject.
    """
    if not token:
        return None

    try:
        if SUPABASE_JWT_SECRET:
            decoded = jwt.decode(
                token,
                SUPABASE_JWT_SECRET,
                algorithms=["HS256"],
                audience="authenticated"
            )
        else:
            decoded = jwt.get_unverified_claims(token)
    except JWTError as decode_error:
        logger.info(f"[Auth] JWT decode error: {decode_error}")
        return None

    user_id = decoded.get("sub")
    if not user_id:
        logger.info("[Auth] No user_id (sub) in decoded token")
        return None

    return {
        "id": user_id,
        "email": decoded.get("email"),
        "role": decoded.get("role", "authenticated"),
    }
