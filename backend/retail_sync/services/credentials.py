from __future__ import annotations

from datetime import datetime, timezone

from loguru import logger

from retail_sync.db.session import get_connection, transaction
from retail_sync.services.remote_api import RemoteCredentials, normalize_base_url


class CredentialsError(Exception):
    pass


class CredentialsNotFoundError(CredentialsError):
    pass


class InvalidCredentialsError(CredentialsError):
    pass


class CredentialStore:
    """The single set of remote API credentials (store id, url, token)."""

    def save(self, store_id: int, api_url: str, api_token: str) -> RemoteCredentials:
        if store_id is None or int(store_id) <= 0:
            raise InvalidCredentialsError("Store id must be a positive integer")
        if not (api_url or "").strip():
            raise InvalidCredentialsError("API url is required")
        if not (api_token or "").strip():
            raise InvalidCredentialsError("API token is required")

        creds = RemoteCredentials(
            store_id=int(store_id),
            api_url=normalize_base_url(api_url),
            api_token=api_token.strip(),
        )
        with transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO credentials (id, store_id, api_url, api_token, updated_at)
                VALUES (1, ?, ?, ?, ?)
                """,
                (
                    creds.store_id,
                    creds.api_url,
                    creds.api_token,
                    datetime.now(tz=timezone.utc).isoformat(),
                ),
            )
        logger.info(f"Credentials saved for store {creds.store_id} ({creds.api_url})")
        return creds

    def load_or_none(self) -> RemoteCredentials | None:
        connection = get_connection()
        try:
            row = connection.execute(
                "SELECT store_id, api_url, api_token FROM credentials WHERE id = 1"
            ).fetchone()
        finally:
            connection.close()

        if not row:
            return None
        return RemoteCredentials(
            store_id=int(row["store_id"]),
            api_url=row["api_url"],
            api_token=row["api_token"],
        )

    def load(self) -> RemoteCredentials:
        creds = self.load_or_none()
        if creds is None:
            raise CredentialsNotFoundError("Credentials not configured")
        return creds

    def is_configured(self) -> bool:
        return self.load_or_none() is not None

    def clear(self) -> None:
        with transaction() as conn:
            conn.execute("DELETE FROM credentials")
        logger.info("Credentials cleared")
