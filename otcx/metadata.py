"""
otcx/metadata.py

Project metadata from the content-addressed store.

Every field is optional. A missing or malformed field becomes an empty
string; a failed fetch yields an empty ProjectMetadata and a log line.
Metadata never blocks the rest of a project's data.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY = "https://gateway.pinata.cloud/ipfs/"


@dataclass(frozen=True)
class ProjectMetadata:
    description: str = ""
    website:     str = ""
    twitter:     str = ""
    logo_url:    str = ""
    icon_url:    str = ""

    @property
    def is_empty(self) -> bool:
        return not any((self.description, self.website, self.twitter, self.logo_url, self.icon_url))


def ipfs_to_http(uri: str, gateway: str = DEFAULT_GATEWAY) -> str:
    """Rewrite ipfs://<cid> (or a bare cid) to a gateway URL. http(s) URIs pass through."""
    if not uri:
        return ""
    if uri.startswith(("http://", "https://")):
        return uri
    if not gateway.endswith("/"):
        gateway += "/"
    if uri.startswith("ipfs://"):
        return gateway + uri[len("ipfs://"):]
    return gateway + uri


def _text(data: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def parse_metadata(data: Any, gateway: str = DEFAULT_GATEWAY) -> ProjectMetadata:
    """Tolerant mapping from the stored JSON object to ProjectMetadata."""
    if not isinstance(data, dict):
        return ProjectMetadata()
    logo = _text(data, "logoUrl", "logo_url", "logo")
    icon = _text(data, "iconUrl", "icon_url", "icon")
    return ProjectMetadata(
        description = _text(data, "description"),
        website     = _text(data, "websiteUrl", "website_url", "website"),
        twitter     = _text(data, "twitterUrl", "twitter_url", "twitter"),
        logo_url    = ipfs_to_http(logo, gateway),
        icon_url    = ipfs_to_http(icon, gateway),
    )


async def fetch_metadata(
    uri:     str,
    session: aiohttp.ClientSession,
    gateway: str = DEFAULT_GATEWAY,
    timeout: float = 10.0,
) -> ProjectMetadata:
    """Fetch and parse one metadata document. Never raises on fetch or parse failure."""
    if not uri:
        return ProjectMetadata()

    url = ipfs_to_http(uri, gateway)
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            response.raise_for_status()
            data = await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.warning("could not load metadata %s: %s", url, e)
        return ProjectMetadata()

    return parse_metadata(data, gateway)


async def fetch_all(
    uris:    Dict[str, str],
    gateway: str = DEFAULT_GATEWAY,
    session: Optional[aiohttp.ClientSession] = None,
) -> Dict[str, ProjectMetadata]:
    """Fetch metadata for many projects concurrently, keyed like `uris`."""
    if session is None:
        async with aiohttp.ClientSession() as own:
            return await fetch_all(uris, gateway, own)

    keys = list(uris)
    results = await asyncio.gather(*(fetch_metadata(uris[k], session, gateway) for k in keys))
    return dict(zip(keys, results))
