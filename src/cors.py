from __future__ import annotations

from src.config import settings


BASE_ALLOWED_HEADERS = ("authorization", "x-client-info", "apikey", "content-type")


def allowed_origins() -> list[str]:
    configured = [settings.site_url or ""]
    configured.extend(str(settings.order_link_allowed_origins or "").split(","))
    origins: list[str] = []
    for item in configured:
        value = item.strip().rstrip("/")
        if value and value not in origins:
            origins.append(value)
    return origins


def restricted_cors_headers(origin: str | None, methods: str = "POST, OPTIONS") -> dict[str, str]:
    """CORS for channels that carry an authenticated identity."""
    origins = allowed_origins()
    normalized = (origin or "").strip().rstrip("/")
    allow_origin = normalized if normalized in origins else (origins[0] if origins else "")
    return {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Headers": ", ".join(BASE_ALLOWED_HEADERS),
        "Access-Control-Allow-Methods": methods,
        "Vary": "Origin",
    }


def open_cors_headers(*extra_headers: str, methods: str = "POST, OPTIONS") -> dict[str, str]:
    headers = list(BASE_ALLOWED_HEADERS)
    headers.extend(h.lower() for h in extra_headers if h)
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Headers": ", ".join(headers),
        "Access-Control-Allow-Methods": methods,
    }


def payment_webhook_cors_headers() -> dict[str, str]:
    return open_cors_headers(settings.payment_webhook_signature_header)
