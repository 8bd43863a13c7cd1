import hmac
import secrets

ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"

DOWNLOAD_PREFIX = "dl_"
EDIT_PREFIX = "ed_"
FILE_PREFIX = "sf_"
BLOB_PREFIX = "blob_"


def new_token_b62(nbytes: int = 16) -> str:
    n = int.from_bytes(secrets.token_bytes(nbytes), "big")
    out = []
    while n:
        n, r = divmod(n, 62)
        out.append(ALPHABET[r])
    return "".join(reversed(out)) or "0"


def new_download_token() -> str:
    return DOWNLOAD_PREFIX + new_token_b62()


def new_edit_token() -> str:
    return EDIT_PREFIX + new_token_b62(24)


def new_file_token() -> str:
    return FILE_PREFIX + new_token_b62()


def new_blob_id() -> str:
    return BLOB_PREFIX + new_token_b62()


def tokens_match(expected: str | None, supplied: str | None) -> bool:
    """Constant-time comparison that treats a missing value as a mismatch."""
    if not expected or not supplied:
        return False
    return hmac.compare_digest(expected.encode(), supplied.encode())
