from __future__ import annotations

import base64


def encode_document(xml_bytes: bytes) -> str:
    """Base64 encode the (signed) document bytes.

    Returns the ASCII string the submission gateway sends as ``comprobanteXml``.
    """
    return base64.b64encode(xml_bytes).decode("ascii")


def decode_document(payload: str) -> bytes:
    return base64.b64decode(payload)
