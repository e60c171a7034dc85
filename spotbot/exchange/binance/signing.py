import hashlib
import hmac
from urllib.parse import urlencode


def signed_query(secret: str, params: dict) -> str:
    """
    Binance SIGNED endpoints: HMAC-SHA256 over the url-encoded query,
    appended as the last `signature` parameter.
    """
    query = urlencode(params, doseq=True)
    signature = hmac.new(
        secret.encode("utf-8"),
        query.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"{query}&signature={signature}"
