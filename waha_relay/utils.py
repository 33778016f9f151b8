from typing import Any, Dict, Optional


def normalize_whatsapp_id(chat_id: Optional[str]) -> Optional[str]:
    """
    Convert WhatsApp chat IDs like '94770889232@c.us' into '+94770889232'.
    Returns None for empty input.
    """
    if not chat_id:
        return None
    s = str(chat_id).strip()
    if not s:
        return None
    local = s.split("@", 1)[0]
    cleaned = local.replace(" ", "").replace("-", "").replace("(", "").replace(")", "")
    if not cleaned:
        return None
    if cleaned.startswith("+"):
        return cleaned
    if cleaned.isdigit():
        return f"+{cleaned}"
    return f"+{''.join(ch for ch in cleaned if ch.isdigit())}"


def to_chat_id(chat: Optional[str]) -> Optional[str]:
    """
    Convert '+94770889232' to '94770889232@c.us' for WAHA when sending.
    Values that already carry a domain ('@c.us', '@g.us', '@lid') are returned as-is.
    """
    if not chat:
        return None
    s = str(chat).strip()
    if "@" in s:
        return s
    local = (normalize_whatsapp_id(s) or s).lstrip("+")
    return f"{local}@c.us"


def describe_user(info: Dict[str, Any]) -> Optional[str]:
    me = info.get("me") or {}
    if not isinstance(me, dict):
        return None
    return me.get("pushName") or me.get("id")
