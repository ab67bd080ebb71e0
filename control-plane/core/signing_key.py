# control-plane/core/signing_key.py
"""
Process-wide token signing key

Resolved once per process, in this order:
1. JWT_SECRET from the environment, if at least MIN_SECRET_LENGTH chars
2. settings table, namespace 'security', key 'jwt_secret' (JSON string)
3. a freshly generated secret, persisted to the settings table

The key itself is never logged.
"""

import json
import logging
import secrets
import threading
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from database.models import Setting

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 32
SETTING_NAMESPACE = "security"
SETTING_KEY = "jwt_secret"

_signing_key: Optional[str] = None
_lock = threading.Lock()


def _from_settings_table(db: Session) -> Optional[str]:
    row = (
        db.query(Setting)
        .filter(Setting.namespace == SETTING_NAMESPACE, Setting.key == SETTING_KEY)
        .first()
    )
    if row is None or row.value is None:
        return None
    try:
        value = json.loads(row.value)
    except ValueError:
        logger.warning("Stored signing key is not valid JSON, ignoring it")
        return None
    if isinstance(value, str) and len(value) >= MIN_SECRET_LENGTH:
        return value
    return None


def _generate_and_store(db: Session) -> str:
    key = secrets.token_hex(32)
    row = (
        db.query(Setting)
        .filter(Setting.namespace == SETTING_NAMESPACE, Setting.key == SETTING_KEY)
        .first()
    )
    if row is None:
        row = Setting(namespace=SETTING_NAMESPACE, key=SETTING_KEY)
        db.add(row)
    row.value = json.dumps(key)
    try:
        db.commit()
    except IntegrityError:
        # Another process stored one first; use theirs
        db.rollback()
        stored = _from_settings_table(db)
        if stored is not None:
            return stored
        raise
    logger.info("Generated a new token signing key")
    return key


def get_signing_key(db: Session) -> str:
    global _signing_key
    if _signing_key is not None:
        return _signing_key

    with _lock:
        if _signing_key is not None:
            return _signing_key

        env_key = settings.JWT_SECRET
        if env_key and len(env_key) >= MIN_SECRET_LENGTH:
            _signing_key = env_key
            logger.info("Using signing key from environment")
        elif env_key:
            logger.warning(f"JWT_SECRET is shorter than {MIN_SECRET_LENGTH} characters, ignoring it")

        if _signing_key is None:
            _signing_key = _from_settings_table(db) or _generate_and_store(db)

        return _signing_key


def reset_signing_key() -> None:
    """Forget the resolved key (tests)"""
    global _signing_key
    with _lock:
        _signing_key = None
