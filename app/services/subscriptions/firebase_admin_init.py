"""Firebase Admin SDK initialization (singleton)."""

import logging
import os

import firebase_admin
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials, firestore

logger = logging.getLogger(__name__)

_db = None


def init_firebase() -> None:
    """Initialize Firebase Admin SDK if not already initialized."""
    if firebase_admin._apps:
        return

    # Service account key file locally, default credentials on Cloud Run / GCE
    cred_path = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
    try:
        if cred_path:
            firebase_admin.initialize_app(credentials.Certificate(cred_path))
        else:
            firebase_admin.initialize_app()
    except (ValueError, OSError) as e:
        logger.error(f"Firebase Admin SDK init failed: {e}")
        raise
    logger.info("Firebase Admin SDK initialized")


def get_firestore_client():
    """Return a Firestore client, initializing Firebase if needed."""
    global _db
    if _db is None:
        init_firebase()
        _db = firestore.client()
    return _db


def verify_id_token(token: str) -> str:
    """Verify a Firebase ID token and return the caller's UID.

    Raises firebase_admin auth errors or ValueError on an invalid token.
    """
    init_firebase()
    decoded = firebase_auth.verify_id_token(token)
    return decoded["uid"]
