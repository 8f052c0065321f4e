import json
from typing import Optional

import firebase_admin
import structlog
from firebase_admin import credentials

from libs.common.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


def firebase_configured(settings: Optional[Settings] = None) -> bool:
    settings = settings or get_settings()
    return bool(
        settings.firebase_admin_sdk_json or settings.firebase_admin_sdk_path or settings.firebase_project_id
    )


def initialize_firebase_app(settings: Optional[Settings] = None) -> firebase_admin.App:
    """
    Initializes the Firebase Admin SDK from settings.

    Credentials come from the inline service account JSON, then the service
    account file; without either, application default credentials are used.
    """
    if firebase_admin._apps:
        return firebase_admin.get_app()

    settings = settings or get_settings()
    options = {"projectId": settings.firebase_project_id} if settings.firebase_project_id else None

    cred = None
    if settings.firebase_admin_sdk_json:
        try:
            cred = credentials.Certificate(json.loads(settings.firebase_admin_sdk_json))
        except json.JSONDecodeError as e:
            raise ValueError("COPILOT_FIREBASE_ADMIN_SDK_JSON is not valid JSON") from e
    elif settings.firebase_admin_sdk_path:
        cred = credentials.Certificate(settings.firebase_admin_sdk_path)

    if cred is None:
        logger.warning("No Firebase credentials configured, using application default credentials")

    app = firebase_admin.initialize_app(cred, options)
    logger.info("Firebase app initialized", project_id=settings.firebase_project_id)
    return app
