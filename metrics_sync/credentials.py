"""
Credential provider over the store.

Connection credentials are JSON objects. When CREDENTIALS_ENCRYPTION_KEY is
set they are stored as Fernet tokens, otherwise as plain JSON.
"""
import json
from datetime import datetime
from typing import Optional, List, Dict, Any

from cryptography.fernet import Fernet, InvalidToken

from metrics_sync.config import config
from metrics_sync.exceptions import CredentialError
from metrics_sync.models import Platform, PlatformConnection
from metrics_sync.observability import get_logger

logger = get_logger(__name__)

# Keys each platform adapter cannot work without
REQUIRED_KEYS: Dict[Platform, tuple] = {
    Platform.STRIPE: ("api_key",),
    Platform.APPSTORE: ("issuer_id", "key_id", "private_key", "vendor_number"),
    Platform.GOOGLEPLAY: ("service_account_json", "bucket_name", "package_name"),
}


class CredentialCodec:
    """Encode/decode credential blobs."""

    def __init__(self, key: Optional[str] = None):
        self._fernet = Fernet(key.encode()) if key else None

    @property
    def encrypted(self) -> bool:
        return self._fernet is not None

    def encode(self, credentials: Dict[str, Any]) -> str:
        payload = json.dumps(credentials, sort_keys=True)
        if self._fernet:
            return self._fernet.encrypt(payload.encode()).decode()
        return payload

    def decode(self, blob: str, platform: Optional[Platform] = None) -> Dict[str, Any]:
        """
        Raises:
            CredentialError: If the blob cannot be decrypted or parsed
        """
        platform_name = platform.value if platform else None
        text = blob
        if self._fernet and not blob.lstrip().startswith("{"):
            try:
                text = self._fernet.decrypt(blob.encode()).decode()
            except InvalidToken:
                raise CredentialError("Stored credentials could not be decrypted", platform=platform_name)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise CredentialError("Stored credentials are not valid JSON", str(e), platform=platform_name)
        if not isinstance(data, dict):
            raise CredentialError("Stored credentials must be a JSON object", platform=platform_name)
        return data


def validate_credentials(platform: Platform, credentials: Dict[str, Any]) -> None:
    """
    Raises:
        CredentialError: If a required key is missing or empty
    """
    missing = [key for key in REQUIRED_KEYS.get(platform, ()) if not credentials.get(key)]
    if missing:
        raise CredentialError(
            f"Missing {platform.display_name} credentials",
            ", ".join(missing),
            platform=platform.value,
        )


class CredentialProvider:
    """
    Supplies decrypted connections for an app and advances their watermark.

    Usage:
        provider = CredentialProvider(store)
        for connection in await provider.get_active_connections("app-1"):
            ...
        await provider.update_last_sync(connection.id, utcnow())
    """

    def __init__(self, store, codec: Optional[CredentialCodec] = None):
        self.store = store
        self.codec = codec or CredentialCodec(config.security.credentials_key)

    async def save_connection(
        self,
        app_id: str,
        platform: Platform,
        credentials: Dict[str, Any],
        is_active: bool = True,
    ) -> int:
        validate_credentials(platform, credentials)
        return await self.store.upsert_connection_blob(
            app_id, platform, self.codec.encode(credentials), is_active
        )

    async def get_active_connections(self, app_id: str) -> List[PlatformConnection]:
        """
        Active connections with decoded credentials.

        A connection whose blob cannot be decoded is still returned with
        empty credentials, so the adapter reports it as a CredentialError
        for that platform alone.
        """
        connections = []
        for row in await self.store.get_connection_rows(app_id, active_only=True):
            try:
                credentials = self.codec.decode(row["credentials"], row["platform"])
            except CredentialError as e:
                logger.warning(f"Unreadable credentials for app {app_id}: {e}")
                credentials = {}
            connections.append(PlatformConnection(
                id=row["id"],
                app_id=row["app_id"],
                platform=row["platform"],
                credentials=credentials,
                is_active=row["is_active"],
                last_sync=row["last_sync"],
            ))
        return connections

    async def update_last_sync(self, connection_id: int, timestamp: datetime) -> None:
        await self.store.update_last_sync(connection_id, timestamp)
