import ipaddress
import logging
import os
import re
import secrets
from pathlib import Path
from typing import Optional, Union

from fastapi import HTTPException

from .sanitize import clean


logger = logging.getLogger(__name__)

LOCAL_ADDRESSES = {'127.0.0.1', '::1', 'localhost'}

_FQDN_LABEL = re.compile(r'^(?!-)[a-z0-9-]{1,63}(?<!-)$', re.IGNORECASE)
_TLD = re.compile(r'^([a-z\u00a1-\uffff]{2,}|xn[a-z0-9-]{2,})$', re.IGNORECASE)
_HOST_CHARS = re.compile(r'[^\w\-./:\[\]]')
_SCHEME = re.compile(r'https?://', re.IGNORECASE)


def is_ip(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def is_fqdn(value: Optional[str]) -> bool:
    if not value or len(value) > 253:
        return False
    host = value[:-1] if value.endswith('.') else value
    labels = host.split('.')
    if len(labels) < 2 or not _TLD.match(labels[-1]):
        return False
    return all(_FQDN_LABEL.match(label) for label in labels)


def normalize_ip(value: Optional[str]) -> str:
    """Strip IPv6 brackets and an IPv4-mapped prefix from a client address."""
    if not value:
        return ''
    ip = value.strip()
    if ip.startswith('['):
        ip = ip[1:]
    if ip.endswith(']'):
        ip = ip[:-1]
    if ip.startswith('::ffff:') and is_ip(ip[7:]):
        ip = ip[7:]
    return ip


def normalize_host(value: Optional[str]) -> str:
    """Reduce a Host header to a bare hostname (no scheme, no port)."""
    host = clean(value or '')
    if not isinstance(host, str):
        return ''
    host = _SCHEME.sub('', _HOST_CHARS.sub('', host))
    if host.startswith('['):
        return host.split(']', 1)[0] + ']'
    return host.split(':', 1)[0]


def is_local(ip: str) -> bool:
    return ip in LOCAL_ADDRESSES


def safe_join_path(root: Union[str, Path], *parts: str) -> Optional[Path]:
    """Join ``parts`` onto ``root`` without ever leaving it.

    ``..`` sequences and ``%`` are neutralised first; returns None when a
    part would resolve outside the current path or adds nothing to it.
    """
    path = Path(os.path.abspath(root))
    for part in parts:
        part = str(part).replace('..', '.').replace('%', '')
        new_path = Path(os.path.abspath(os.path.join(path, part)))
        if new_path == path or path not in new_path.parents:
            return None
        path = new_path
    return path


def rand_token(size: int = 64) -> str:
    return secrets.token_hex(size)


def require_path(root: Union[str, Path], *parts: str) -> Path:
    path = safe_join_path(root, *parts)
    if path is None:
        logger.warning(f"Rejected path outside of {root}: {parts}")
        raise HTTPException(status_code=400, detail="Invalid path")
    return path
