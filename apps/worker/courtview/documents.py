"""
Captcha-gated document retrieval.

FLOW PER ATTEMPT (cookie strategy):
1. Fresh HTTP client + fresh CaptchaSession (own cookie jar)
2. GET the document page to seed session cookies
3. GET the challenge (image, or a text token for token profiles)
4. Solve -> ordered candidates; submit the best one the source could accept
5. POST the form with the session cookies and referer
6. Classify the response: accepted payload or captcha rejection

Every retry starts over from step 1, so a new session never sees a stale
cookie or challenge. Backoff between attempts is linear (1s, 2s, ...).

ERRORS:
- InvalidInputError: bad document id / code / date, before any network call
- RateLimitedError:  upstream 429, surfaced immediately, never retried
- CaptchaRejectedError / UpstreamFetchError: swallowed and retried
- DocumentRetrievalError: attempt budget exhausted, wraps the last cause

The browser strategy runs the same round-trip in a fresh Playwright context
for sources whose challenge is rendered client-side.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import quote

import httpx
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from courtview.captcha_session import CaptchaSession, SessionRegistry, get_registry
from courtview.captcha_solver import CaptchaSolver, decode_captcha_token
from courtview.config import parse_int_list, settings
from courtview.errors import (
    CaptchaRejectedError,
    DocumentRetrievalError,
    InvalidInputError,
    RateLimitedError,
    UpstreamFetchError,
)
from courtview.models import RetrievedDocument

logger = logging.getLogger(__name__)

_USER_AGENT = "Mozilla/5.0"


# ---------------------------------------------------------------------------
# Source profiles
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceProfile:
    """Everything that differs between captcha-protected sources."""
    name: str
    page_url: str
    challenge_url: str
    submit_url: str
    form_fields: dict[str, str] = field(default_factory=dict)
    document_field: str = "judgmentID"
    code_field: str = "securitycode"
    challenge_kind: str = "image"
    alphabet: str = "digits"
    expected_length: int = 6
    expected_content_type: str = "application/pdf"
    magic_bytes: bytes = b"%PDF"
    document_id_pattern: str = r"^\d+$"
    image_selector: str = "#captcha_image"
    input_selector: str = "input[name='securitycode']"
    submit_selector: str = "input[type='submit']"

    def page_for(self, document_id: str) -> str:
        return self.page_url.format(document_id=quote(document_id, safe=""))

    def challenge_for(self) -> str:
        if self.challenge_kind != "image":
            return self.challenge_url
        sep = "&" if "?" in self.challenge_url else "?"
        return f"{self.challenge_url}{sep}{int(time.time() * 1000)}"

    def form_for(self, document_id: str, code: str) -> dict[str, str]:
        return {
            self.document_field: document_id,
            **self.form_fields,
            self.code_field: code,
        }


def elegalix_profile(base_url: str, challenge_kind: str = "image") -> SourceProfile:
    base = base_url.rstrip("/")
    download = f"{base}/WebDownloadJudgmentDocument.do"
    if challenge_kind == "token":
        challenge = f"{base}/getData?action=generateCaptcha"
    else:
        challenge = f"{base}/getImage"
    return SourceProfile(
        name=f"elegalix-{challenge_kind}",
        page_url=f"{download}?judgmentID={{document_id}}",
        challenge_url=challenge,
        submit_url=download,
        form_fields={"subseq": "no"},
        challenge_kind=challenge_kind,
    )


ELEGALIX_PROFILE = elegalix_profile("https://elegalix.allahabadhighcourt.in/elegalix")
ELEGALIX_TOKEN_PROFILE = elegalix_profile(
    "https://elegalix.allahabadhighcourt.in/elegalix", challenge_kind="token"
)


# ---------------------------------------------------------------------------
# Validation and classification
# ---------------------------------------------------------------------------

_DATE_FORMATS = ("%Y-%m-%d", "%d-%m-%Y")


def validate_document_id(profile: SourceProfile, document_id: str) -> str:
    value = (document_id or "").strip()
    if not re.match(profile.document_id_pattern, value):
        raise InvalidInputError(f"Invalid document id {document_id!r} for {profile.name}")
    return value


def validate_code(profile: SourceProfile, code: str) -> str:
    value = (code or "").strip()
    n = profile.expected_length
    pattern = rf"^\d{{{n}}}$" if profile.alphabet == "digits" else rf"^[A-Za-z0-9]{{{n}}}$"
    if not re.match(pattern, value):
        raise InvalidInputError(f"Security code must be {n} characters ({profile.alphabet})")
    return value


def validate_date(value: str | None) -> str | None:
    if value is None or value == "":
        return None
    for fmt in _DATE_FORMATS:
        try:
            datetime.strptime(value, fmt)
            return value
        except ValueError:
            continue
    raise InvalidInputError(f"Invalid date {value!r}, expected YYYY-MM-DD or DD-MM-YYYY")


def _safe_token(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", value)


def build_filename(document_id: str, date: str | None = None) -> str:
    date_part = f"-{_safe_token(date)}" if date else ""
    return f"order-judgment-{_safe_token(document_id)}{date_part}.pdf"


def _looks_like_html(content_type: str, body: bytes) -> bool:
    if "text/html" in content_type:
        return True
    head = body[:64].lstrip().lower()
    return b"<html" in head or b"<!doctype" in head


def classify_payload(
    profile: SourceProfile, status_code: int, content_type: str, body: bytes
) -> bool:
    """True iff the response is the protected document, not a rejection page."""
    content_type = (content_type or "").lower()
    if not 200 <= status_code < 300:
        return False
    if _looks_like_html(content_type, body):
        return False
    if profile.expected_content_type and profile.expected_content_type not in content_type:
        return False
    return body.startswith(profile.magic_bytes)


def pick_candidate(profile: SourceProfile, candidates: list[str]) -> str:
    """First candidate the source could accept. Raises CaptchaRejectedError if none."""
    for candidate in candidates:
        try:
            return validate_code(profile, candidate)
        except InvalidInputError:
            logger.debug("Skipping unusable captcha candidate %r", candidate)
    raise CaptchaRejectedError(
        f"No usable captcha candidate among {len(candidates)} read(s)"
    )


def _raise_for_status(resp_status: int, what: str, retry_after: str | None = None) -> None:
    if resp_status == 429:
        seconds = None
        if retry_after:
            try:
                seconds = float(retry_after)
            except ValueError:
                seconds = None
        raise RateLimitedError(f"{what} rate-limited (429)", retry_after=seconds)
    if resp_status >= 400:
        raise UpstreamFetchError(f"{what} failed ({resp_status})", status_code=resp_status)


# ---------------------------------------------------------------------------
# Cookie-backed strategy
# ---------------------------------------------------------------------------

class CookieCaptchaStrategy:
    """Plain HTTP round-trip with a per-session cookie jar."""

    def __init__(
        self,
        profile: SourceProfile,
        solver: CaptchaSolver | None = None,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        timeout: float = 30,
        session_ttl_seconds: float = 300,
    ):
        self.profile = profile
        self.solver = solver or CaptchaSolver(
            alphabet=profile.alphabet, expected_length=profile.expected_length
        )
        self._timeout = timeout
        self._client_factory = client_factory or self._default_client
        self._session_ttl = session_ttl_seconds

    def _default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout,
            headers={"User-Agent": _USER_AGENT},
            follow_redirects=True,
        )

    def client(self) -> httpx.AsyncClient:
        return self._client_factory()

    async def _send(self, coro, what: str) -> httpx.Response:
        try:
            return await coro
        except httpx.TimeoutException as exc:
            raise UpstreamFetchError(f"{what} timed out") from exc
        except httpx.HTTPError as exc:
            raise UpstreamFetchError(f"{what} failed: {exc}") from exc

    async def open_session(self, client: httpx.AsyncClient, document_id: str) -> CaptchaSession:
        """Fresh session, cookies seeded from the document page."""
        session = CaptchaSession(document_id=document_id, ttl_seconds=self._session_ttl)
        resp = await self._send(
            client.get(self.profile.page_for(document_id)), "Document page"
        )
        _raise_for_status(resp.status_code, "Document page", resp.headers.get("Retry-After"))
        session.cookies.update_from_response(resp)
        logger.debug(
            "Opened captcha session %s for %s (%d cookie(s))",
            session.session_id, document_id, len(session.cookies),
        )
        return session

    async def fetch_challenge(self, client: httpx.AsyncClient, session: CaptchaSession) -> bytes:
        url = self.profile.challenge_for()
        headers = {"Cookie": session.cookies.header()} if session.cookies else {}
        resp = await self._send(client.get(url, headers=headers), "Captcha challenge")
        _raise_for_status(resp.status_code, "Captcha challenge", resp.headers.get("Retry-After"))
        session.cookies.update_from_response(resp)
        session.challenge_url = url
        session.challenge_image = resp.content
        return resp.content

    async def solve(self, challenge: bytes) -> list[str]:
        if self.profile.challenge_kind == "token":
            try:
                text = challenge.decode("utf-8", errors="replace")
                return [decode_captcha_token(text, self.profile.expected_length)]
            except ValueError:
                logger.warning("Captcha token could not be decoded")
                return []
        return await self.solver.solve_async(challenge)

    async def submit(
        self, client: httpx.AsyncClient, session: CaptchaSession, code: str
    ) -> RetrievedDocument:
        """POST the code. Raises CaptchaRejectedError if the payload is not accepted."""
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Referer": self.profile.page_for(session.document_id),
        }
        if session.cookies:
            headers["Cookie"] = session.cookies.header()
        resp = await self._send(
            client.post(
                self.profile.submit_url,
                data=self.profile.form_for(session.document_id, code),
                headers=headers,
            ),
            "Document download",
        )
        if resp.status_code == 429 or resp.status_code >= 500:
            _raise_for_status(resp.status_code, "Document download", resp.headers.get("Retry-After"))
        session.cookies.update_from_response(resp)

        content_type = resp.headers.get("content-type", "")
        if not classify_payload(self.profile, resp.status_code, content_type, resp.content):
            raise CaptchaRejectedError(
                f"Security code rejected for document {session.document_id} "
                f"(status {resp.status_code}, content-type {content_type or 'none'})"
            )
        return RetrievedDocument(
            document_id=session.document_id,
            content=resp.content,
            content_type=content_type.split(";")[0].strip() or self.profile.expected_content_type,
            filename=build_filename(session.document_id),
        )

    async def attempt(self, document_id: str) -> RetrievedDocument:
        """One full round-trip in a fresh client and session."""
        async with self.client() as client:
            session = await self.open_session(client, document_id)
            challenge = await self.fetch_challenge(client, session)
            candidates = await self.solve(challenge)
            if not candidates:
                raise CaptchaRejectedError("No captcha candidates could be read")
            code = pick_candidate(self.profile, candidates)
            logger.info(
                "Session %s: submitting candidate %s (%d candidate(s))",
                session.session_id, code, len(candidates),
            )
            return await self.submit(client, session, code)


# ---------------------------------------------------------------------------
# Browser-rendered strategy
# ---------------------------------------------------------------------------

class BrowserCaptchaStrategy:
    """Same round-trip in a fresh headless browser context per attempt."""

    def __init__(
        self,
        profile: SourceProfile,
        solver: CaptchaSolver | None = None,
        headless: bool = True,
        navigation_timeout_ms: int = 30000,
        playwright_factory: Callable = async_playwright,
    ):
        self.profile = profile
        self.solver = solver or CaptchaSolver(
            alphabet=profile.alphabet, expected_length=profile.expected_length
        )
        self._headless = headless
        self._timeout_ms = navigation_timeout_ms
        self._playwright_factory = playwright_factory

    def _is_challenge(self, url: str) -> bool:
        return url.startswith(self.profile.challenge_url)

    async def _capture_challenge(self, page, url: str) -> bytes:
        image = b""
        try:
            async with page.expect_response(
                lambda r: self._is_challenge(r.url), timeout=self._timeout_ms
            ) as challenge_info:
                nav = await page.goto(url, timeout=self._timeout_ms, wait_until="domcontentloaded")
                if nav is not None:
                    _raise_for_status(nav.status, "Document page")
            image = await (await challenge_info.value).body()
        except PlaywrightTimeoutError:
            logger.warning("Challenge response not observed for %s. Using screenshot.", url)

        if not image:
            image = await page.locator(self.profile.image_selector).screenshot(
                timeout=self._timeout_ms
            )
        return image

    async def attempt(self, document_id: str) -> RetrievedDocument:
        url = self.profile.page_for(document_id)
        try:
            async with self._playwright_factory() as pw:
                browser = await pw.chromium.launch(headless=self._headless)
                try:
                    context = await browser.new_context(user_agent=_USER_AGENT)
                    page = await context.new_page()
                    page.set_default_timeout(self._timeout_ms)

                    image = await self._capture_challenge(page, url)
                    candidates = await self.solver.solve_async(image)
                    if not candidates:
                        raise CaptchaRejectedError("No captcha candidates could be read")
                    code = pick_candidate(self.profile, candidates)

                    await page.fill(self.profile.input_selector, code)
                    async with page.expect_response(
                        lambda r: r.request.method == "POST"
                        and r.url.startswith(self.profile.submit_url),
                        timeout=self._timeout_ms,
                    ) as submit_info:
                        await page.click(self.profile.submit_selector)
                    resp = await submit_info.value
                    if resp.status == 429 or resp.status >= 500:
                        _raise_for_status(resp.status, "Document download")
                    body = await resp.body()
                    content_type = resp.headers.get("content-type", "")
                finally:
                    await browser.close()
        except PlaywrightTimeoutError as exc:
            raise UpstreamFetchError(f"Browser navigation timed out for {document_id}") from exc
        except PlaywrightError as exc:
            raise UpstreamFetchError(f"Browser retrieval failed for {document_id}: {exc}") from exc

        if not classify_payload(self.profile, resp.status, content_type, body):
            raise CaptchaRejectedError(
                f"Security code rejected for document {document_id} (browser)"
            )
        return RetrievedDocument(
            document_id=document_id,
            content=body,
            content_type=content_type.split(";")[0].strip() or self.profile.expected_content_type,
            filename=build_filename(document_id),
        )


# ---------------------------------------------------------------------------
# Retriever
# ---------------------------------------------------------------------------

class DocumentRetriever:
    """Bounded retry loop over a strategy, plus the manual captcha path."""

    def __init__(
        self,
        strategy: CookieCaptchaStrategy,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        fallback: BrowserCaptchaStrategy | None = None,
        registry: SessionRegistry | None = None,
    ):
        self.strategy = strategy
        self.profile = strategy.profile
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff_seconds
        self._fallback = fallback
        self._registry = registry

    @property
    def registry(self) -> SessionRegistry:
        return self._registry if self._registry is not None else get_registry()

    async def retrieve(
        self,
        document_id: str,
        security_code: str | None = None,
        date: str | None = None,
        session_id: str | None = None,
    ) -> RetrievedDocument:
        """
        Retrieve one document.

        With security_code: a single submission in the session (session_id)
        whose challenge the caller read. Otherwise up to max_attempts
        automated attempts, each with a fresh session.
        """
        document_id = validate_document_id(self.profile, document_id)
        date = validate_date(date)
        if security_code is not None:
            validate_code(self.profile, security_code)
            if not session_id:
                raise InvalidInputError(
                    "A security code must be sent with the session id that issued its challenge"
                )
            return await self.submit_code(
                session_id, security_code, date=date, document_id=document_id
            )

        try:
            return await self._run(self.strategy, document_id, date)
        except DocumentRetrievalError as exc:
            if self._fallback is None or not isinstance(exc.last_error, CaptchaRejectedError):
                raise
            logger.warning(
                "Cookie strategy exhausted for %s. Trying browser strategy.", document_id
            )
            return await self._run(self._fallback, document_id, date)

    async def _run(self, strategy, document_id: str, date: str | None) -> RetrievedDocument:
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                doc = await strategy.attempt(document_id)
            except (RateLimitedError, InvalidInputError):
                raise
            except (CaptchaRejectedError, UpstreamFetchError) as exc:
                last_error = exc
                logger.warning(
                    "Retrieval attempt %d/%d for %s failed: %s",
                    attempt, self._max_attempts, document_id, exc,
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._backoff * attempt)
                continue

            logger.info(
                "Retrieved document %s (%d bytes) on attempt %d",
                document_id, len(doc.content), attempt,
            )
            return dataclasses.replace(
                doc, attempts=attempt, filename=build_filename(document_id, date)
            )

        raise DocumentRetrievalError(
            f"Failed to retrieve document {document_id} after {self._max_attempts} attempts: "
            f"{last_error}",
            attempts=self._max_attempts,
            last_error=last_error,
        )

    # ------------------------------------------------------------------
    # Manual captcha path
    # ------------------------------------------------------------------

    async def open_challenge(self, document_id: str) -> str:
        """Start a session whose challenge a human will solve. Returns its id."""
        document_id = validate_document_id(self.profile, document_id)
        async with self.strategy.client() as client:
            session = await self.strategy.open_session(client, document_id)
        session.ttl_seconds = self.registry.ttl_seconds
        self.registry.add(session)
        return session.session_id

    async def challenge_image(self, session_id: str) -> bytes:
        session = self.registry.get(session_id)
        async with self.strategy.client() as client:
            return await self.strategy.fetch_challenge(client, session)

    async def submit_code(
        self,
        session_id: str,
        code: str,
        date: str | None = None,
        document_id: str | None = None,
    ) -> RetrievedDocument:
        session = self.registry.get(session_id)
        code = validate_code(self.profile, code)
        date = validate_date(date)
        if document_id is not None and document_id != session.document_id:
            raise InvalidInputError(
                f"Session {session_id} was opened for document {session.document_id}"
            )
        async with self.strategy.client() as client:
            try:
                doc = await self.strategy.submit(client, session, code)
            except CaptchaRejectedError:
                self.registry.discard(session_id)
                raise
        self.registry.discard(session_id)
        return dataclasses.replace(doc, filename=build_filename(session.document_id, date))


# ---------------------------------------------------------------------------
# Process-wide retriever
# ---------------------------------------------------------------------------

_retriever: DocumentRetriever | None = None


def _solver_from_settings(profile: SourceProfile) -> CaptchaSolver:
    return CaptchaSolver(
        alphabet=profile.alphabet,
        expected_length=settings.captcha_expected_length,
        thresholds=parse_int_list(settings.captcha_thresholds),
        upscale_factor=settings.captcha_upscale_factor,
        psm_modes=parse_int_list(settings.captcha_psm_modes),
        use_easyocr=settings.captcha_use_easyocr,
    )


def get_retriever() -> DocumentRetriever:
    """Lazy-init the shared document retriever."""
    global _retriever
    if _retriever is None:
        profile = elegalix_profile(settings.document_base_url)
        solver = _solver_from_settings(profile)
        fallback = None
        if settings.browser_fallback_enabled:
            fallback = BrowserCaptchaStrategy(
                profile,
                solver=solver,
                headless=settings.browser_headless,
                navigation_timeout_ms=settings.browser_navigation_timeout_ms,
            )
        _retriever = DocumentRetriever(
            CookieCaptchaStrategy(
                profile,
                solver=solver,
                timeout=settings.document_request_timeout_seconds,
                session_ttl_seconds=settings.captcha_session_ttl_seconds,
            ),
            max_attempts=settings.document_max_attempts,
            backoff_seconds=settings.document_backoff_seconds,
            fallback=fallback,
        )
    return _retriever
