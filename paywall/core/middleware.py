from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from paywall.core.config import settings
from paywall.core.firebase import verify_firebase_token
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> dict:
    """
    Dependency to get current authenticated user from a Firebase ID token.
    Token issuance happens elsewhere; this only verifies it.
    """
    try:
        decoded_token = verify_firebase_token(credentials.credentials)
    except Exception as e:
        logger.error(f"get_current_user: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = decoded_token.get('uid')
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials"
        )

    return {
        'uid': user_id,
        'email': decoded_token.get('email'),
        'token': decoded_token
    }


async def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    """Dependency restricting a route to the configured admin emails"""
    if current_user.get('email') not in settings.admin_emails:
        logger.warning(f"require_admin: Unauthorized - user: {current_user.get('email')}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user
