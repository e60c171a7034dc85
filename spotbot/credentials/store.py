from __future__ import annotations

import logging

from cryptography.fernet import Fernet, InvalidToken

from spotbot.core.errors import CredentialError, PersistenceError
from spotbot.exchange.models import ExchangeCredentials
from spotbot.persistence.db import DB, utc_now_iso

log = logging.getLogger("spotbot.credentials")


class CredentialStore:
    """
    Per-user exchange links with Fernet-encrypted key/secret.

    `encryption_key` is a urlsafe-base64 32-byte Fernet key
    (Fernet.generate_key()).
    """

    def __init__(self, db: DB, encryption_key: str):
        self.db = db
        self._fernet: Fernet | None = None
        if encryption_key:
            try:
                self._fernet = Fernet(encryption_key.encode("utf-8"))
            except (ValueError, TypeError) as e:
                log.error("ENCRYPTION_KEY is not a valid Fernet key: %s", e)

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            raise CredentialError("ENCRYPTION_KEY missing or invalid")
        return self._fernet

    def encrypt(self, plaintext: str) -> str:
        return self._cipher().encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            out = self._cipher().decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError, ValueError) as e:
            raise CredentialError("cannot decrypt stored credential") from e
        if not out:
            raise CredentialError("decrypted credential is empty")
        return out

    def save_link(self, user_id: str, api_key: str, api_secret: str) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO exchange_links(user_id, api_key_enc, api_secret_enc, updated_at)
                VALUES (?,?,?,?)
                ON CONFLICT(user_id) DO UPDATE SET
                    api_key_enc=excluded.api_key_enc,
                    api_secret_enc=excluded.api_secret_enc,
                    updated_at=excluded.updated_at
                """,
                (user_id, self.encrypt(api_key), self.encrypt(api_secret), utc_now_iso()),
            )

    def credentials_for(self, user_id: str) -> ExchangeCredentials:
        try:
            with self.db.connect() as conn:
                row = conn.execute(
                    "SELECT api_key_enc, api_secret_enc FROM exchange_links WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
        except PersistenceError as e:
            raise CredentialError(f"exchange link lookup failed: {e}") from e

        if not row:
            raise CredentialError(f"no exchange link for user {user_id}")

        return ExchangeCredentials(
            api_key=self.decrypt(row["api_key_enc"]),
            api_secret=self.decrypt(row["api_secret_enc"]),
        )
