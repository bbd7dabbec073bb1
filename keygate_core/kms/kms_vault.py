# keygate_core/kms/kms_vault.py
import requests

from keygate_core.errors import IntegrityError, KmsError, KmsUnavailableError
from keygate_core.kms.kms_base import KmsBackend
from keygate_core.logger import get_logger
from keygate_core.utils import b64d, b64e

log = get_logger("KG.Vault")


class VaultTransitBackend(KmsBackend):
    """
    Remote KMS backed by a HashiCorp Vault transit engine.

    - POST /v1/{mount}/encrypt/{handle} {"plaintext": b64} -> data.ciphertext
    - POST /v1/{mount}/decrypt/{handle} {"ciphertext": s}  -> data.plaintext (b64)

    The returned "vault:vN:..." ciphertext string is the stored blob. Vault
    manages IV and authentication internally.
    """
    name = "vault"

    def __init__(self, base_url: str, token: str | None = None, mount: str = "transit",
                 timeout: float = 5.0, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.mount = mount.strip("/")
        self.timeout = timeout
        self._token = token
        self._session = session or requests.Session()

    def _post(self, op: str, handle: str, body: dict) -> dict:
        url = f"{self.base_url}/v1/{self.mount}/{op}/{handle}"
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["X-Vault-Token"] = self._token

        log.debug(f"[VAULT {op.upper()}] → {url}")
        try:
            res = self._session.post(url, json=body, headers=headers, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            log.warning(f"[VAULT {op.upper()}] unreachable: {type(e).__name__}")
            raise KmsUnavailableError(f"Vault {op} unreachable") from None
        except requests.RequestException as e:
            raise KmsError(f"Vault {op} request failed: {type(e).__name__}") from None

        if res.status_code >= 500 or res.status_code == 429:
            log.warning(f"[VAULT {op.upper()}] {res.status_code}")
            raise KmsUnavailableError(f"Vault {op} returned {res.status_code}")
        if res.status_code == 400 and op == "decrypt":
            # Vault answers 400 when the ciphertext fails authentication
            raise IntegrityError("KMS rejected the wrapped key")
        if not res.ok:
            log.error(f"[VAULT {op.upper()}] {res.status_code}")
            raise KmsError(f"Vault {op} returned {res.status_code}")

        try:
            return res.json()["data"]
        except (ValueError, KeyError, TypeError):
            raise KmsError(f"Vault {op} returned a malformed response") from None

    def encrypt(self, handle: str, plaintext: bytes) -> bytes:
        data = self._post("encrypt", handle, {"plaintext": b64e(plaintext)})
        ciphertext = data.get("ciphertext")
        if not ciphertext:
            raise KmsError("Vault encrypt returned no ciphertext")
        return ciphertext.encode("utf-8")

    def decrypt(self, handle: str, blob: bytes) -> bytes:
        try:
            ciphertext = blob.decode("utf-8")
        except UnicodeDecodeError:
            raise IntegrityError("KMS wrapped key is not a Vault ciphertext") from None
        data = self._post("decrypt", handle, {"ciphertext": ciphertext})
        plaintext = data.get("plaintext")
        if not plaintext:
            raise KmsError("Vault decrypt returned no plaintext")
        try:
            return b64d(plaintext)
        except ValueError:
            raise KmsError("Vault decrypt returned malformed plaintext") from None

    def healthz(self) -> dict:
        try:
            res = self._session.get(f"{self.base_url}/v1/sys/health", timeout=self.timeout)
            return {"status": "ok" if res.ok else "degraded", "kms": self.name, "code": res.status_code}
        except requests.RequestException:
            return {"status": "down", "kms": self.name}
