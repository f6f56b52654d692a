"""Marketplace icon bundled with the broker."""

import base64

ICON_PNG_BASE64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)

ICON_PNG = base64.b64decode(ICON_PNG_BASE64)


def icon_data_uri() -> str:
    return f"data:image/png;base64,{ICON_PNG_BASE64}"
