"""
YouTube metadata lookup for import enrichment.

Video pages render their details client-side, so titles, publish dates and
channel names come from the YouTube Data API instead of the HTML. Lookups
are batched, and like page fetches they never raise: videos that cannot be
resolved are simply missing from the result.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional, Sequence

import httpx

from .dates import normalize_date
from .models import PageMetadata
from .title_fetcher import http_client_scope
from ..config import settings

logger = logging.getLogger(__name__)

VIDEOS_ENDPOINT = "https://www.googleapis.com/youtube/v3/videos"

# API limit for the `id` parameter of videos.list
MAX_IDS_PER_REQUEST = 50

VIDEO_ID = re.compile(
    r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)([A-Za-z0-9_-]{11})"
)


def extract_video_id(url: Any) -> Optional[str]:
    """Return the 11-character video id of a YouTube URL, or None."""
    if not isinstance(url, str):
        return None
    match = VIDEO_ID.search(url)
    return match.group(1) if match else None


def _snippet_metadata(item: Dict[str, Any]) -> PageMetadata:
    snippet = item.get("snippet") or {}
    title = (snippet.get("title") or "").strip()
    author = (snippet.get("channelTitle") or "").strip()
    return PageMetadata(
        title=title or None,
        publish_date=normalize_date(snippet.get("publishedAt")),
        author=author or None,
    )


async def fetch_video_metadata(
    urls: Sequence[str],
    api_key: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, PageMetadata]:
    """
    Look up every YouTube URL in `urls` with as few API calls as possible.

    Parameters
    ----------
    urls : Sequence[str]
        Candidate URLs; non-YouTube URLs are ignored.
    api_key : Optional[str]
        Defaults to settings.youtube_api_key. Without a key no request is
        made and the result is empty.
    client : Optional[httpx.AsyncClient]
        Shared client to use; a short-lived one is created when omitted.

    Returns
    -------
    Dict[str, PageMetadata]
        Metadata keyed by the original URL, for resolved videos only.
    """
    if api_key is None and settings.youtube_api_key is not None:
        api_key = settings.youtube_api_key.get_secret_value()

    ids_by_url: Dict[str, str] = {}
    for url in urls:
        video_id = extract_video_id(url)
        if video_id:
            ids_by_url[url] = video_id

    if not ids_by_url or not api_key:
        return {}

    video_ids = list(dict.fromkeys(ids_by_url.values()))
    found: Dict[str, PageMetadata] = {}

    async with http_client_scope(client, settings.youtube_api_timeout_seconds) as http:
        for start in range(0, len(video_ids), MAX_IDS_PER_REQUEST):
            batch = video_ids[start:start + MAX_IDS_PER_REQUEST]
            try:
                resp = await http.get(
                    VIDEOS_ENDPOINT,
                    params={"part": "snippet", "id": ",".join(batch), "key": api_key},
                )
                resp.raise_for_status()
                payload = resp.json()
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("YouTube lookup for %d videos failed: %s", len(batch), exc)
                continue

            items = payload.get("items") if isinstance(payload, dict) else None
            for item in items or []:
                if isinstance(item, dict) and item.get("id"):
                    found[item["id"]] = _snippet_metadata(item)

    logger.info("YouTube lookup resolved %d of %d videos", len(found), len(video_ids))
    return {url: found[video_id] for url, video_id in ids_by_url.items() if video_id in found}
