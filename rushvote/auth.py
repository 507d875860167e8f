"""Authentication from reverse-proxy headers.

Identity and role storage belong to the proxy (Authelia, OAuth2 Proxy and
similar); this module only reads the trusted headers it forwards and turns
group membership into the ``is_admin`` flag the core relies on.

With auth disabled (local development) the caller may identify itself with
``X-Voter-Id`` and ``X-Voter-Admin`` headers instead.
"""

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from ipaddress import IPv4Network, IPv6Network, ip_address, ip_network
from typing import Optional

from fastapi import HTTPException, Request, status

from . import config
from .logging_config import set_current_voter

logger = logging.getLogger(__name__)

# Environment configuration
AUTH_ENABLED = os.getenv("RUSHVOTE_AUTH_ENABLED", "false").lower() == "true"

# Trusted proxy IPs - only accept auth headers from these sources
TRUSTED_PROXY_IPS = os.getenv(
    "RUSHVOTE_TRUSTED_PROXY_IPS",
    "127.0.0.1,::1,10.0.0.0/8,172.16.0.0/12,192.168.0.0/16",
)

# Header names (Authelia/OAuth2 Proxy standard)
REMOTE_USER_HEADER = "Remote-User"
REMOTE_GROUPS_HEADER = "Remote-Groups"
REMOTE_EMAIL_HEADER = "Remote-Email"
REMOTE_NAME_HEADER = "Remote-Name"

# Development headers, honoured only while auth is disabled
DEV_VOTER_HEADER = "X-Voter-Id"
DEV_ADMIN_HEADER = "X-Voter-Admin"


@dataclass
class Voter:
    """Authenticated brother (or administrator)."""

    voter_id: str
    email: Optional[str] = None
    groups: list[str] = field(default_factory=list)
    display_name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return config.ADMIN_GROUP in self.groups


@lru_cache
def _parse_trusted_ips() -> tuple[IPv4Network | IPv6Network, ...]:
    """Trusted proxies as networks; a bare address becomes a single-host network."""
    networks = []
    for entry in filter(None, (part.strip() for part in TRUSTED_PROXY_IPS.split(","))):
        try:
            networks.append(ip_network(entry, strict=False))
        except ValueError:
            logger.warning("Ignoring bad RUSHVOTE_TRUSTED_PROXY_IPS entry %r", entry)
    return tuple(networks)


def _is_trusted_ip(client_ip: str) -> bool:
    try:
        client = ip_address(client_ip)
    except ValueError:
        logger.warning("Unparseable client address %r", client_ip)
        return False
    return any(client in network for network in _parse_trusted_ips())


def _get_peer_ip(request: Request) -> str:
    """Address of the directly connected peer (the proxy, when there is one).

    X-Forwarded-For is written by the client side and is never consulted
    here; only the socket peer decides whether identity headers are trusted.
    """
    return request.client.host if request.client else ""


def _parse_groups(raw: str) -> list[str]:
    return [g.strip() for g in raw.split(",") if g.strip()]


def _dev_voter(request: Request) -> Optional[Voter]:
    voter_id = request.headers.get(DEV_VOTER_HEADER)
    if not voter_id:
        return None
    is_admin = request.headers.get(DEV_ADMIN_HEADER, "").lower() in ("1", "true", "yes")
    return Voter(voter_id=voter_id, groups=[config.ADMIN_GROUP] if is_admin else [])


def _proxy_voter(request: Request) -> Optional[Voter]:
    headers = request.headers
    voter_id = headers.get(REMOTE_USER_HEADER)
    if not voter_id:
        return None

    peer_ip = _get_peer_ip(request)
    if not _is_trusted_ip(peer_ip):
        logger.warning("Identity headers from untrusted peer %s ignored", peer_ip)
        return None

    return Voter(
        voter_id=voter_id,
        email=headers.get(REMOTE_EMAIL_HEADER),
        groups=_parse_groups(headers.get(REMOTE_GROUPS_HEADER, "")),
        display_name=headers.get(REMOTE_NAME_HEADER),
    )


async def get_current_voter(request: Request) -> Optional[Voter]:
    """Identify the caller and record it in the logging context.

    With auth enabled only a trusted proxy's ``Remote-*`` headers count;
    otherwise the development headers do.
    """
    voter = _proxy_voter(request) if AUTH_ENABLED else _dev_voter(request)
    if voter is not None:
        set_current_voter(voter.voter_id)
    return voter


async def get_optional_voter(request: Request) -> Optional[Voter]:
    """Dependency for routes readable without identification."""
    return await get_current_voter(request)


async def require_voter(request: Request) -> Voter:
    """Dependency that requires an identified voter.

    Raises:
        HTTPException: 401 if not authenticated
    """
    voter = await get_current_voter(request)
    if voter is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return voter


async def require_admin(request: Request) -> Voter:
    """Dependency that requires an administrator.

    Raises:
        HTTPException: 401 if not authenticated, 403 if not an admin
    """
    voter = await require_voter(request)
    if not voter.is_admin:
        logger.warning("Admin route refused for voter %s", voter.voter_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return voter
