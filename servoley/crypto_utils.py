"""
Cryptographic utilities for ServoLeY.
Handles field encryption, masking, hashing and payment signatures.
"""

import hashlib
import hmac
import secrets

from cryptography.fernet import InvalidToken


def _fernet():
    from . import fernet
    if fernet is None:
        raise RuntimeError('Encryption key not initialised')
    return fernet


def encrypt_field(value):
    """
    Encrypt a sensitive text value using Fernet (AES-128-CBC + HMAC).
    Empty values are stored as NULL.
    """
    if value is None or str(value).strip() == '':
        return None
    return _fernet().encrypt(str(value).strip().encode('utf-8'))


def decrypt_field(token):
    if not token:
        return None
    try:
        return _fernet().decrypt(bytes(token)).decode('utf-8')
    except InvalidToken:
        return None


def mask_value(value, visible=4):
    """Keep the last `visible` characters: 'ABCDE1234F' -> '******234F'."""
    if not value:
        return None
    value = str(value)
    if len(value) <= visible:
        return '*' * len(value)
    return '*' * (len(value) - visible) + value[-visible:]


def sha256_hex(data) -> str:
    """
    Calculate SHA-256 hash of text or bytes.
    Returns: Hex string of the hash
    """
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def generate_numeric_code(length=6) -> str:
    """Numeric one-time code from the system CSPRNG."""
    return ''.join(str(secrets.randbelow(10)) for _ in range(length))


def generate_reference(prefix):
    return f'{prefix}_{secrets.token_hex(8)}'


def payment_signature(order_id, payment_id, secret) -> str:
    """HMAC-SHA256 over 'orderId|paymentId', the gateway checkout signature."""
    message = f'{order_id}|{payment_id}'.encode('utf-8')
    return hmac.new(secret.encode('utf-8'), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id, payment_id, signature, secret) -> bool:
    if not signature or not secret:
        return False
    expected = payment_signature(order_id, payment_id, secret)
    return hmac.compare_digest(expected, str(signature))
