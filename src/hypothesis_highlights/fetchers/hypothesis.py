"""Fetch annotations from the Hypothes.is search API."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests

from hypothesis_highlights.errors import AuthError, RemoteError, TransientError
from hypothesis_highlights.models import Annotation, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.hypothes.is/api"
DEFAULT_TIMEOUT = 30.0
DEFAULT_PAGE_SIZE = 200


@dataclass(frozen=True)
class PageToken:
    """Opaque position inside an ``updated``-ordered result set.

    The next request asks for records strictly after ``search_after``. The
    search API refuses ``offset`` together with ``search_after``, so records
    sharing the last timestamp of a page are requested again on the next
    page; callers de-duplicate by annotation id.
    """

    search_after: Optional[str] = None


@dataclass(frozen=True)
class AnnotationPage:
    annotations: Tuple[Annotation, ...]
    next_token: Optional[PageToken]

    @property
    def done(self) -> bool:
        return self.next_token is None


class HypothesisClient:
    """Read-only client for the Hypothes.is annotation API.

    Parameters
    ----------
    token:
        Developer API token of the account to sync.
    user:
        ``acct:name@hypothes.is`` id of the token owner. Looked up through
        ``/profile`` on first use when omitted.
    api_url:
        Base URL of the API, without a trailing slash.
    timeout:
        Seconds before any single HTTP request is abandoned.
    session:
        Optional ``requests.Session``. Primarily intended for tests so that
        HTTP requests can be faked.
    """

    def __init__(
        self,
        token: str,
        *,
        user: Optional[str] = None,
        api_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not token:
            raise AuthError("An API token is required to fetch annotations.")
        self._session = session if session is not None else requests.Session()
        self._token = token
        self.user = user
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def fetch_profile(self) -> str:
        """Return the user id owning the token."""

        payload = self._get("profile")
        userid = payload.get("userid")
        if not userid:
            raise AuthError("The API token is not associated with a Hypothes.is account.")
        self.user = str(userid)
        return self.user

    def fetch_since(self, cursor: Optional[str], page_token: Optional[PageToken] = None) -> AnnotationPage:
        """Fetch one page of annotations updated strictly after ``cursor``."""

        token = page_token or PageToken(search_after=cursor)
        params: Dict[str, Any] = {
            "user": self._require_user(),
            "sort": "updated",
            "order": "asc",
            "limit": self.page_size,
        }
        if token.search_after:
            params["search_after"] = token.search_after

        rows = self._search(params)
        annotations = self._parse_rows(rows)
        next_token = self._next_token(rows)
        logger.debug("Fetched %d annotation(s) after %s", len(annotations), token.search_after)
        return AnnotationPage(annotations=annotations, next_token=next_token)

    def fetch_document(self, document_id: str) -> List[Annotation]:
        """Fetch every annotation the user made on one document."""

        collected: Dict[str, Annotation] = {}
        token = PageToken()
        while True:
            params: Dict[str, Any] = {
                "user": self._require_user(),
                "uri": document_id,
                "sort": "updated",
                "order": "asc",
                "limit": self.page_size,
            }
            if token.search_after:
                params["search_after"] = token.search_after
            rows = self._search(params)
            for annotation in self._parse_rows(rows):
                if annotation.document_id == document_id:
                    collected[annotation.id] = annotation
            next_token = self._next_token(rows)
            if next_token is None:
                return list(collected.values())
            token = next_token

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require_user(self) -> str:
        if not self.user:
            self.fetch_profile()
        return str(self.user)

    def _search(self, params: Mapping[str, Any]) -> List[Dict[str, Any]]:
        payload = self._get("search", params=params)
        rows = payload.get("rows")
        if not isinstance(rows, list):
            raise RemoteError("Unexpected response format from the Hypothes.is search API")
        return [row for row in rows if isinstance(row, dict)]

    def _get(self, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.api_url}/{endpoint}"
        try:
            response = self._session.get(url, params=params, headers=self._headers, timeout=self.timeout)
        except requests.exceptions.Timeout as exc:
            raise TransientError(f"Request to {url} timed out: {exc}") from exc
        except requests.exceptions.ConnectionError as exc:
            raise TransientError(f"Connection to {url} failed: {exc}") from exc
        self._ensure_success(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteError("Received invalid JSON from the Hypothes.is API") from exc
        if not isinstance(payload, dict):
            raise RemoteError("Unexpected response format from the Hypothes.is API")
        return payload

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/vnd.hypothesis.v1+json",
            "User-Agent": "Obsidian-Hypothesis-Highlights/1.0",
        }

    def _ensure_success(self, response: Any) -> None:
        status = getattr(response, "status_code", None)
        if status is None:
            raise RemoteError("Hypothes.is request returned no status code.")
        if status in (401, 403):
            raise AuthError(f"Hypothes.is rejected the API token (status code {status}).")
        if status == 429 or status >= 500:
            raise TransientError(f"Hypothes.is is unavailable (status code {status}).")
        if status >= 400:
            raise RemoteError(f"Hypothes.is request failed with status code {status}.")

    def _next_token(self, rows: List[Dict[str, Any]]) -> Optional[PageToken]:
        if len(rows) < self.page_size or not rows:
            return None
        stamps = [str(row.get("updated", "")) for row in rows]
        try:
            parsed = [parse_timestamp(stamp) for stamp in stamps]
        except ValueError as exc:
            raise RemoteError("Search results contain an invalid 'updated' timestamp") from exc
        boundary = 0
        for stamp in reversed(parsed):
            if stamp != parsed[-1]:
                break
            boundary += 1
        if boundary == len(rows):
            # Without an offset there is no way to reach the rest of this timestamp.
            logger.warning(
                "%d annotations share the update time %s; later ones at that time are skipped",
                len(rows),
                stamps[-1],
            )
            return PageToken(search_after=stamps[-1])
        # Restart before the last timestamp so a run split by the page end is read whole.
        return PageToken(search_after=stamps[-boundary - 1])

    def _parse_rows(self, rows: List[Dict[str, Any]]) -> Tuple[Annotation, ...]:
        annotations = [annotation for annotation in (self._parse_annotation(row) for row in rows) if annotation]
        annotations.sort(key=lambda annotation: (annotation.updated, annotation.id))
        return tuple(annotations)

    def _parse_annotation(self, payload: Dict[str, Any]) -> Optional[Annotation]:
        annotation_id = payload.get("id")
        uri = payload.get("uri")
        if not annotation_id or not uri:
            return None
        if payload.get("references"):
            # Replies belong to a discussion thread, not to the document.
            return None

        try:
            created = parse_timestamp(str(payload["created"]))
            updated = parse_timestamp(str(payload["updated"]))
        except (KeyError, ValueError) as exc:
            raise RemoteError(f"Annotation {annotation_id} has an invalid timestamp") from exc

        tags = payload.get("tags") or []
        links = payload.get("links") or {}
        return Annotation(
            id=str(annotation_id),
            document_id=str(uri),
            document_title=self._extract_title(payload, str(uri)),
            uri=str(uri),
            text=self._extract_quote(payload),
            created=created,
            updated=updated,
            user=str(payload.get("user") or ""),
            note=(str(payload["text"]).strip() or None) if payload.get("text") else None,
            tags=tuple(str(tag) for tag in tags),
            group=str(payload.get("group") or "__world__"),
            incontext_url=links.get("incontext") if isinstance(links, dict) else None,
        )

    def _extract_title(self, payload: Dict[str, Any], fallback: str) -> str:
        document = payload.get("document")
        if isinstance(document, dict):
            titles = document.get("title")
            if isinstance(titles, list) and titles:
                return str(titles[0]).strip() or fallback
            if isinstance(titles, str) and titles.strip():
                return titles.strip()
        return fallback

    def _extract_quote(self, payload: Dict[str, Any]) -> str:
        for target in payload.get("target") or []:
            if not isinstance(target, dict):
                continue
            for selector in target.get("selector") or []:
                if isinstance(selector, dict) and selector.get("type") == "TextQuoteSelector":
                    return str(selector.get("exact") or "").strip()
        return ""
