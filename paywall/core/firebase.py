import firebase_admin
from firebase_admin import credentials, auth
from paywall.core.config import Settings
import logging

logger = logging.getLogger(__name__)


def init_firebase(settings: Settings):
    """Initialize Firebase Admin SDK (used only to verify ID tokens)"""
    logger.info("init_firebase: Entry")

    try:
        if not firebase_admin._apps:
            cred = credentials.Certificate(settings.firebase_credentials_path)
            firebase_admin.initialize_app(cred, {
                'projectId': settings.firebase_project_id,
            })
            logger.info("init_firebase: Success")
        else:
            logger.info("init_firebase: Already initialized")
    except Exception as e:
        logger.error(f"init_firebase: Failure - {e}")
        raise


def verify_firebase_token(token: str) -> dict:
    """Verify Firebase JWT token and return decoded token"""
    try:
        decoded_token = auth.verify_id_token(token)
        logger.debug(f"verify_firebase_token: Success - {decoded_token.get('uid')}")
        return decoded_token
    except Exception as e:
        logger.warning(f"verify_firebase_token: Failure - {e}")
        raise
