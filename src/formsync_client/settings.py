"""
Integration settings, field mappings and form meta.

Settings whose key looks like a credential are encrypted at rest with Fernet
and decrypted on read; they are never written to the log in plaintext.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Optional, Sequence

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger

from . import sql as q
from .client import Database, degrade_on_store_error
from .errors import ValidationError
from .models import FieldMapping, IntegrationSetting
from .utils import convert_setting, is_secret_key, serialize_setting, setting_type_of


class SettingsCipher:
    """Symmetric encryption for credential settings."""

    def __init__(self, key: bytes):
        self._fernet = Fernet(key)

    @classmethod
    def from_secret(cls, secret: str, salt: str = "formsync-settings") -> "SettingsCipher":
        """Derive a Fernet key from an application secret with PBKDF2."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            iterations=100_000,
        )
        return cls(base64.urlsafe_b64encode(kdf.derive(secret.encode())))

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, token: str) -> str:
        return self._fernet.decrypt(token.encode()).decode()


class SettingsStore:
    def __init__(self, db: Database, cipher: SettingsCipher):
        self._db = db
        self._cipher = cipher

    def save(self, integration_id: str, settings: dict[str, Any]) -> int:
        if not integration_id:
            raise ValidationError("integration_id is required")
        rows = []
        for key, value in settings.items():
            setting_type = setting_type_of(value)
            raw = serialize_setting(value)
            encrypted = is_secret_key(key) and raw != ""
            if encrypted:
                raw = self._cipher.encrypt(raw)
            rows.append(
                {
                    "integration_id": integration_id,
                    "setting_key": key,
                    "setting_value": raw,
                    "setting_type": setting_type,
                    "is_encrypted": encrypted,
                }
            )
        if not rows:
            return 0
        with self._db.cursor() as cur:
            cur.executemany(q.UPSERT_SETTING, rows)
        logger.info(
            f"Saved {len(rows)} settings for {integration_id} "
            f"(keys={sorted(settings)})"
        )
        return len(rows)

    @degrade_on_store_error(dict)
    def get(self, integration_id: str) -> dict[str, Any]:
        """Settings for display; an unreachable store reads as no settings."""
        return self.fetch(integration_id)

    def fetch(self, integration_id: str) -> dict[str, Any]:
        """Settings for delivery. Raises StoreError when the store cannot be read."""
        with self._db.cursor() as cur:
            cur.execute(q.GET_SETTINGS, {"integration_id": integration_id})
            rows = cur.fetchall()
        out: dict[str, Any] = {}
        for row in rows:
            setting = IntegrationSetting.model_validate(row)
            out[setting.setting_key] = self._decode(setting)
        return out

    def _decode(self, setting: IntegrationSetting) -> Any:
        raw = setting.setting_value
        if setting.is_encrypted and raw:
            try:
                raw = self._cipher.decrypt(raw)
            except InvalidToken:
                logger.error(
                    f"Could not decrypt setting {setting.integration_id}.{setting.setting_key}"
                )
                return None
        return convert_setting(raw, setting.setting_type)


class FieldMappingStore:
    def __init__(self, db: Database):
        self._db = db

    def replace(self, form_id: int, integration_id: str, mappings: Sequence[FieldMapping]) -> int:
        """Replace the full mapping set of a form/integration pair."""
        rows = []
        for order, m in enumerate(mappings):
            if m.form_id != form_id or m.integration_id != integration_id:
                raise ValidationError("mapping does not belong to this form/integration")
            data = m.model_dump()
            data["mapping_order"] = m.mapping_order or order
            rows.append(data)
        with self._db.cursor() as cur:
            cur.execute(
                q.DELETE_FIELD_MAPPINGS, {"form_id": form_id, "integration_id": integration_id}
            )
            if rows:
                cur.executemany(q.INSERT_FIELD_MAPPING, rows)
        return len(rows)

    @degrade_on_store_error(list)
    def get(self, form_id: int, integration_id: str) -> list[FieldMapping]:
        return self.fetch(form_id, integration_id)

    def fetch(self, form_id: int, integration_id: str) -> list[FieldMapping]:
        with self._db.cursor() as cur:
            cur.execute(
                q.GET_FIELD_MAPPINGS, {"form_id": form_id, "integration_id": integration_id}
            )
            rows = cur.fetchall()
        return [FieldMapping.model_validate(r) for r in rows]


class FormMetaStore:
    FIELDS_KEY = "fields"

    def __init__(self, db: Database):
        self._db = db

    @degrade_on_store_error(lambda: None)
    def get(self, form_id: int, meta_key: str) -> Optional[str]:
        return self.fetch(form_id, meta_key)

    def fetch(self, form_id: int, meta_key: str) -> Optional[str]:
        """Meta value, or None only when no such row exists."""
        with self._db.cursor() as cur:
            cur.execute(q.GET_FORM_META, {"form_id": form_id, "meta_key": meta_key})
            row = cur.fetchone()
        return row["meta_value"] if row else None

    def save(self, form_id: int, meta_key: str, meta_value: str) -> bool:
        with self._db.cursor() as cur:
            cur.execute(
                q.UPSERT_FORM_META,
                {"form_id": form_id, "meta_key": meta_key, "meta_value": meta_value},
            )
            return cur.rowcount == 1

    def form_fields(self, form_id: int) -> Optional[list[dict]]:
        """Field definitions of a form, or None when the form is unknown.

        Store failures raise; they are never reported as an unknown form.
        """
        raw = self.fetch(form_id, self.FIELDS_KEY)
        if raw is None:
            return None
        try:
            fields = json.loads(raw)
        except ValueError:
            logger.warning(f"Form {form_id} has malformed field definitions")
            return []
        return fields if isinstance(fields, list) else []

    def save_form_fields(self, form_id: int, fields: list[dict]) -> bool:
        return self.save(form_id, self.FIELDS_KEY, json.dumps(fields))
