"""
File: pulse/sources/scraper.py
Instagram scraping capability backed by an Apify actor, over the Apify REST API.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from pulse.config import Settings, settings as default_settings
from pulse.errors import UpstreamEmpty, UpstreamError
from pulse.models import ScrapedComment, ScrapedProfile
from pulse.sources.common import parse_comment_item, parse_profile_item

logger = logging.getLogger(__name__)

RUN_SUCCEEDED = "SUCCEEDED"
RUN_FAILURES = {"FAILED", "ABORTED", "TIMED-OUT"}
EMPTY_MARKERS = ("empty or private", "private", "no_items")


def _is_empty_marker(item: Dict[str, Any]) -> bool:
    error = item.get("error")
    if not error:
        return False
    description = f"{error} {item.get('errorDescription', '')}".lower()
    return any(marker in description for marker in EMPTY_MARKERS)


class ApifyScraper:
    """Runs the Instagram scraper actor and waits, bounded, for its dataset."""

    def __init__(
        self,
        config: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or default_settings
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.APIFY_BASE_URL,
            params={"token": self.config.APIFY_TOKEN},
            timeout=self.config.SCRAPER_HTTP_TIMEOUT,
            transport=self._transport,
        )

    async def fetch_comments(self, post_url: str, limit: Optional[int] = None) -> List[ScrapedComment]:
        """
        Fetch comments for one post.

        Args:
            post_url: Validated post or reel URL
            limit: Result cap (defaults to COMMENT_RESULTS_LIMIT)

        Returns:
            Comments that carry both an id and non-empty text

        Raises:
            UpstreamEmpty: The post is private or has no data
            UpstreamError: The run failed, timed out or the API was unreachable
        """
        run_input = {
            "directUrls": [post_url],
            "resultsType": "comments",
            "resultsLimit": limit or self.config.COMMENT_RESULTS_LIMIT,
            "addParentData": False,
        }
        items = await self._run_actor(run_input)

        comments: List[ScrapedComment] = []
        for item in items:
            comment = parse_comment_item(item)
            if comment is not None:
                comments.append(comment)

        logger.info("%d valid comments of %d items for %s", len(comments), len(items), post_url)
        return comments

    async def fetch_profile(self, profile_url: str) -> ScrapedProfile:
        """
        Fetch profile details and latest posts.

        Raises:
            UpstreamEmpty: The profile is private or returned nothing
            UpstreamError: The run failed, timed out or the API was unreachable
        """
        run_input = {
            "directUrls": [profile_url],
            "resultsType": "details",
            "resultsLimit": 1,
            "addParentData": False,
            "maxPosts": self.config.PROFILE_MAX_POSTS,
        }
        items = await self._run_actor(run_input)
        if not items:
            raise UpstreamEmpty(f"No profile data returned for {profile_url}")

        profile = parse_profile_item(items[0])
        logger.info(
            "Profile %s: %d followers, %d latest posts",
            profile.username or profile_url,
            profile.followers_count,
            len(profile.latest_posts),
        )
        return profile

    async def _run_actor(self, run_input: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not self.config.APIFY_TOKEN:
            raise UpstreamError("Scraper is not configured (APIFY_TOKEN missing)")

        try:
            async with self._client() as client:
                run = await self._start_run(client, run_input)
                run = await self._wait_for_run(client, run)
                items = await self._list_items(client, run["defaultDatasetId"])
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            reason = "rate limited" if status == 429 else f"HTTP {status}"
            raise UpstreamError(f"Scraper API error: {reason}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Scraper API unreachable: {type(e).__name__}") from e
        except (ValueError, KeyError, AttributeError, TypeError) as e:
            # non-JSON bodies (gateway pages) and payloads missing run fields
            raise UpstreamError(f"Scraper API returned a malformed payload: {type(e).__name__}") from e

        errors = [item for item in items if isinstance(item, dict) and item.get("error")]
        if items and len(errors) == len(items):
            if any(_is_empty_marker(item) for item in errors):
                raise UpstreamEmpty(str(errors[0].get("errorDescription") or errors[0]["error"]))
            raise UpstreamError(f"Scraper returned only errors: {errors[0]['error']}")

        return [item for item in items if isinstance(item, dict) and not item.get("error")]

    async def _start_run(self, client: httpx.AsyncClient, run_input: Dict[str, Any]) -> Dict[str, Any]:
        response = await client.post(f"/acts/{self.config.APIFY_ACTOR_ID}/runs", json=run_input)
        response.raise_for_status()
        run = response.json().get("data") or {}
        if not run.get("id") or not run.get("defaultDatasetId"):
            raise UpstreamError("Scraper run started without an id or dataset")
        logger.debug("Started scraper run %s", run["id"])
        return run

    async def _wait_for_run(self, client: httpx.AsyncClient, run: Dict[str, Any]) -> Dict[str, Any]:
        """Poll the run until it reaches a terminal status or the wait timeout is spent."""
        deadline = self._clock() + self.config.SCRAPER_WAIT_TIMEOUT
        status = run.get("status")
        while status != RUN_SUCCEEDED:
            if status in RUN_FAILURES:
                raise UpstreamError(f"Scraper run {run['id']} ended with {status}")
            if self._clock() >= deadline:
                raise UpstreamError(
                    f"Timed out after {self.config.SCRAPER_WAIT_TIMEOUT:.0f}s waiting for run {run['id']}"
                )
            await self._sleep(self.config.SCRAPER_POLL_SECONDS)
            response = await client.get(f"/actor-runs/{run['id']}")
            response.raise_for_status()
            run = {**run, **(response.json().get("data") or {})}
            status = run.get("status")
        return run

    async def _list_items(self, client: httpx.AsyncClient, dataset_id: str) -> List[Dict[str, Any]]:
        response = await client.get(f"/datasets/{dataset_id}/items", params={"clean": "true", "format": "json"})
        response.raise_for_status()
        data = response.json()
        return data if isinstance(data, list) else []
