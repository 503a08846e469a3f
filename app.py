from __future__ import annotations

import gzip
import hashlib
import logging
import os
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import requests
from bs4 import BeautifulSoup
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import HTMLResponse, Response
from starlette.concurrency import run_in_threadpool

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("app")

app = FastAPI(title="Smalk Ads Proxy")

DB_PATH = "config.db"
PAGE_CACHE_DIR = "page_cache"

SMALK_API_DEFAULT = "https://api.smalk.ai"
ADS_CONTENT_PATH = "/api/v1/transform/ads/content/"
TRACKING_PATH = "/api/v1/tracking/visit"

API_TIMEOUT_DEFAULT = 0.25
API_TIMEOUT_MAX = 5.0
TRACKING_TIMEOUT = (0.5, 1.0)

ADS_INJECTED_HEADER = "X-Smalk-Ads-Injected"
DEFAULT_PLACEMENT_ID = "default"

STATIC_ASSET_EXTENSIONS = (
    ".png",
    ".ico",
    ".jpg",
    ".jpeg",
    ".gif",
    ".css",
    ".js",
    ".woff",
    ".woff2",
    ".ttf",
    ".svg",
    ".map",
)

NO_CACHE_HEADERS = {
    "Cache-Control": "private, max-age=0, no-cache, no-store, must-revalidate",
    "Expires": "Sun, 19 Nov 1978 05:00:00 GMT",
    "Pragma": "no-cache",
}

UPSTREAM_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/115.0 Safari/537.36"
)

# Shared connection pool for every outbound call to the Smalk API.
HTTP_SESSION = requests.Session()


# ------------------------------------------------------------------------------
# Database & config helpers
# ------------------------------------------------------------------------------

def get_db() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    conn = get_db()
    c = conn.cursor()

    c.execute(
        """
        CREATE TABLE IF NOT EXISTS configs (
            id INTEGER PRIMARY KEY,
            site_id INTEGER,
            key TEXT,
            value TEXT
        )
        """
    )

    conn.commit()
    conn.close()


@app.on_event("startup")
def on_startup() -> None:
    init_db()


def save_config(cursor: sqlite3.Cursor, key: str, value: str, site_id: int = 1) -> None:
    cursor.execute("DELETE FROM configs WHERE site_id = ? AND key = ?", (site_id, key))
    cursor.execute(
        "INSERT INTO configs (site_id, key, value) VALUES (?, ?, ?)",
        (site_id, key, value),
    )


def load_config_map(site_id: int = 1) -> Dict[str, str]:
    conn = get_db()
    c = conn.cursor()
    rows = c.execute("SELECT key, value FROM configs WHERE site_id = ?", (site_id,)).fetchall()
    conn.close()
    return {row["key"]: row["value"] for row in rows}


def as_bool(value: str | bool | None, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def as_float(value: str | float | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class SmalkConfig:
    enabled: bool
    tracking_enabled: bool
    ads_enabled: bool
    publisher_activated: bool
    api_key: str
    workspace_key: str
    api_timeout: float
    exclude_admin_pages: bool
    excluded_paths: str
    debug_mode: bool
    api_base_url: str
    origin_url: str
    page_cache_enabled: bool

    @property
    def ads_content_url(self) -> str:
        return f"{self.api_base_url.rstrip('/')}{ADS_CONTENT_PATH}"

    @property
    def tracking_url(self) -> str:
        return f"{self.api_base_url.rstrip('/')}{TRACKING_PATH}"

    @property
    def diagnostic_level(self) -> int:
        # Pipeline diagnostics only surface when the site owner asked for them.
        return logging.WARNING if self.debug_mode else logging.DEBUG


def build_smalk_config(config_map: Mapping[str, str]) -> SmalkConfig:
    requested_timeout = as_float(config_map.get("api_timeout"), default=API_TIMEOUT_DEFAULT)
    if requested_timeout <= 0:
        requested_timeout = API_TIMEOUT_DEFAULT
    api_timeout = min(API_TIMEOUT_MAX, requested_timeout)
    if api_timeout != requested_timeout:
        # Evaluated on every request.
        logger.debug(
            "Clamping Smalk API timeout from %s to %s seconds",
            requested_timeout,
            api_timeout,
        )

    return SmalkConfig(
        enabled=as_bool(config_map.get("enabled"), default=True),
        tracking_enabled=as_bool(config_map.get("tracking_enabled"), default=True),
        ads_enabled=as_bool(config_map.get("ads_enabled"), default=True),
        publisher_activated=as_bool(config_map.get("publisher_activated"), default=False),
        api_key=(config_map.get("api_key") or "").strip(),
        workspace_key=(config_map.get("workspace_key") or "").strip(),
        api_timeout=api_timeout,
        exclude_admin_pages=as_bool(config_map.get("exclude_admin_pages"), default=True),
        excluded_paths=config_map.get("excluded_paths") or "",
        debug_mode=as_bool(config_map.get("debug_mode"), default=False),
        api_base_url=(config_map.get("api_base_url") or "").strip() or SMALK_API_DEFAULT,
        origin_url=(config_map.get("origin_url") or "").strip() or "https://example.com",
        page_cache_enabled=as_bool(config_map.get("page_cache_enabled"), default=False),
    )


# ------------------------------------------------------------------------------
# Request classification
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class RequestContext:
    path: str
    method: str = "GET"
    url: str = ""
    user_agent: str = ""
    referer: str = ""
    peer_ip: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def client_ip(self) -> str:
        return resolve_client_ip(self.headers, self.peer_ip)


def build_request_context(request: Request) -> RequestContext:
    headers = request.headers
    return RequestContext(
        path=request.url.path,
        method=request.method,
        url=str(request.url),
        user_agent=headers.get("user-agent", ""),
        referer=headers.get("referer", ""),
        peer_ip=request.client.host if request.client else "",
        headers={
            "X-Forwarded-For": headers.get("x-forwarded-for", ""),
            "X-Real-IP": headers.get("x-real-ip", ""),
        },
    )


def resolve_client_ip(headers: Mapping[str, str], fallback: str | None = None) -> str:
    """Best-effort visitor address, trusting proxy headers over the socket peer."""
    forwarded_for = headers.get("X-Forwarded-For") or ""
    first_hop = forwarded_for.split(",", 1)[0].strip()
    if first_hop:
        return first_hop

    real_ip = headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return fallback or ""


def parse_excluded_paths(value: str | None) -> List[str]:
    if not value:
        return []
    return [line.strip() for line in value.splitlines() if line.strip()]


def wildcard_to_regex(pattern: str) -> re.Pattern:
    translated = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(translated)


def is_path_excluded(path: str, config: SmalkConfig) -> bool:
    if config.exclude_admin_pages and path.startswith("/admin"):
        return True

    for pattern in parse_excluded_paths(config.excluded_paths):
        if wildcard_to_regex(pattern).fullmatch(path):
            return True

    return False


def is_static_asset(path: str) -> bool:
    return path.lower().endswith(STATIC_ASSET_EXTENSIONS)


# ------------------------------------------------------------------------------
# Placeholder scanning
# ------------------------------------------------------------------------------

# <tag ... smalk-ads[=value] ...>inner</tag>, closing tag back-referenced to the opener.
PLACEHOLDER_RE = re.compile(
    r"""(?P<open><(?P<tag>\w+)\b[^>]*\bsmalk-ads(?:="[^"]*"|='[^']*'|=[^\s>]+|(?=\s)|(?=>))[^>]*>)"""
    r""".*?</(?P=tag)>""",
    re.IGNORECASE | re.DOTALL,
)
PLACEMENT_ID_RE = re.compile(
    r"""(?<![\w-])id\s*=\s*(?:(["'])(?P<quoted>[^"']*)\1|(?P<bare>[^\s>"']+))""",
    re.IGNORECASE,
)
PLACEHOLDER_ATTRIBUTE_RE = re.compile(r"smalk-ads", re.IGNORECASE)


@dataclass(frozen=True)
class Placeholder:
    markup: str
    placement_id: str


def extract_placement_id(opening_tag: str) -> str:
    match = PLACEMENT_ID_RE.search(opening_tag)
    if not match:
        return DEFAULT_PLACEMENT_ID
    return match.group("quoted") or match.group("bare") or DEFAULT_PLACEMENT_ID


def scan_placeholders(html: str) -> Iterator[Placeholder]:
    """Yield every ad placeholder element in document order.

    Each placeholder carries the exact matched text of the page. Every call
    starts a fresh scan of the same input.
    """
    for match in PLACEHOLDER_RE.finditer(html):
        yield Placeholder(
            markup=match.group(0),
            placement_id=extract_placement_id(match.group("open")),
        )


def has_placeholder(html: str) -> bool:
    return PLACEHOLDER_RE.search(html) is not None


def count_parsed_placeholders(html: str) -> int:
    """Number of elements an HTML parser sees carrying the placeholder attribute."""
    soup = BeautifulSoup(html, "html.parser")
    return len(soup.find_all(attrs={"smalk-ads": True}))


def describe_scan_mismatch(html: str) -> Optional[str]:
    """Explain why the attribute is present but no placeholder element matched.

    Returns None when there is nothing to report.
    """
    if has_placeholder(html) or not PLACEHOLDER_ATTRIBUTE_RE.search(html):
        return None
    parsed = count_parsed_placeholders(html)
    return (
        f"found 'smalk-ads' text but no balanced placeholder element "
        f"(parser sees {parsed} element(s) with the attribute)"
    )


# ------------------------------------------------------------------------------
# Smalk API client
# ------------------------------------------------------------------------------

def _api_headers(api_key: str) -> Dict[str, str]:
    return {
        "Authorization": f"Api-Key {api_key}",
        "Content-Type": "application/json",
    }


def build_ad_request(context: RequestContext, placement_id: str, workspace_key: str) -> Dict[str, str]:
    return {
        "project_key": workspace_key,
        "user_agent": context.user_agent,
        "referer": context.referer,
        "client_ip": context.client_ip,
        "current_url": context.url,
        "page_url": context.path,
        "placement_id": placement_id,
        "timestamp": datetime.now().astimezone().isoformat(timespec="seconds"),
    }


def fetch_ad_content(context: RequestContext, placement_id: str, config: SmalkConfig) -> Optional[str]:
    payload = build_ad_request(context, placement_id, config.workspace_key)
    timeout = config.api_timeout
    try:
        resp = HTTP_SESSION.post(
            config.ads_content_url,
            json=payload,
            headers=_api_headers(config.api_key),
            timeout=(timeout, timeout),
        )
    except requests.Timeout:
        logger.log(config.diagnostic_level, "Smalk Ads: API timeout for %s (placement %s)", context.url, placement_id)
        return None
    except requests.RequestException as exc:
        logger.log(config.diagnostic_level, "Smalk Ads: API request failed: %s", exc)
        return None

    if resp.status_code != 200:
        logger.log(
            config.diagnostic_level,
            "Smalk Ads: API returned %s for placement %s",
            resp.status_code,
            placement_id,
        )
        return None

    try:
        data = resp.json()
    except ValueError:
        logger.log(config.diagnostic_level, "Smalk Ads: unparseable API response for placement %s", placement_id)
        return None

    html = data.get("html") if isinstance(data, dict) else None
    if not isinstance(html, str):
        return None
    return html


def build_tracking_payload(context: RequestContext) -> Dict[str, object]:
    return {
        "request_path": context.path,
        "request_method": context.method,
        "request_headers": {
            "User-Agent": context.user_agent,
            "X-Real-IP": context.client_ip,
            "Referer": context.referer,
        },
    }


def send_visit(payload: Dict[str, object], config: SmalkConfig) -> None:
    path = payload.get("request_path")
    try:
        resp = HTTP_SESSION.post(
            config.tracking_url,
            json=payload,
            headers=_api_headers(config.api_key),
            timeout=TRACKING_TIMEOUT,
        )
    except requests.Timeout:
        logger.log(config.diagnostic_level, "Smalk Tracking: timeout for %s", path)
        return
    except requests.RequestException as exc:
        logger.log(config.diagnostic_level, "Smalk Tracking: failed for %s: %s", path, exc)
        return

    if config.debug_mode:
        logger.info("Smalk Tracking: sent for %s - status %s", path, resp.status_code)


# ------------------------------------------------------------------------------
# Ad injection
# ------------------------------------------------------------------------------

FetchFn = Callable[[str], Optional[str]]


@dataclass
class AdInjection:
    html: str
    injected: int = 0
    attempted: bool = False
    headers: Dict[str, str] = field(default_factory=dict)


def rewrite_placeholders(html: str, placeholders: List[Placeholder], fetch_fn: FetchFn) -> Tuple[str, int]:
    """Replace placeholders with fetched content, in scan order.

    Each successful fetch consumes the first remaining occurrence of the
    placeholder's literal markup, so byte-identical placeholders are filled
    in document order. Unrelated text identical to a placeholder's markup
    would be consumed the same way.
    """
    injected = 0
    for placeholder in placeholders:
        content = fetch_fn(placeholder.placement_id)
        if not content:
            continue
        html = html.replace(placeholder.markup, content, 1)
        injected += 1
    return html, injected


def ad_fetcher(context: RequestContext, config: SmalkConfig) -> FetchFn:
    def fetch(placement_id: str) -> Optional[str]:
        content = fetch_ad_content(context, placement_id, config)
        if not content:
            logger.log(config.diagnostic_level, "Smalk Ads: no ad content for placement %s", placement_id)
        return content

    return fetch


def is_html_content_type(content_type: str | None) -> bool:
    return (content_type or "").strip().lower().startswith("text/html")


def ads_skip_reason(content_type: str | None, context: RequestContext, config: SmalkConfig) -> Optional[str]:
    if not is_html_content_type(content_type):
        return f"not HTML (Content-Type: {content_type or 'empty'})"
    if not (config.enabled and config.ads_enabled):
        return "ads disabled"
    if not (config.workspace_key and config.api_key):
        return "missing credentials"
    if not config.publisher_activated:
        return "publisher not activated"
    if is_path_excluded(context.path, config):
        return f"path excluded: {context.path}"
    return None


def inject_ads(
    html: str,
    content_type: str | None,
    context: RequestContext,
    config: SmalkConfig,
    fetch_fn: Optional[FetchFn] = None,
) -> AdInjection:
    result = AdInjection(html=html)

    reason = ads_skip_reason(content_type, context, config)
    if reason is not None:
        logger.debug("Smalk Ads: skipping %s - %s", context.path, reason)
        return result

    if not html:
        logger.debug("Smalk Ads: skipping %s - empty content", context.path)
        return result

    placeholders = list(scan_placeholders(html))
    if not placeholders:
        mismatch = describe_scan_mismatch(html) if logger.isEnabledFor(config.diagnostic_level) else None
        if mismatch:
            logger.log(config.diagnostic_level, "Smalk Ads: %s on %s", mismatch, context.path)
        return result

    if config.debug_mode:
        logger.info("Smalk Ads: found %d placeholder(s), injecting ads for %s", len(placeholders), context.url)

    if fetch_fn is None:
        fetch_fn = ad_fetcher(context, config)

    result.html, result.injected = rewrite_placeholders(html, placeholders, fetch_fn)
    result.attempted = True

    # Any page able to carry ads is never stored, filled or not.
    result.headers = dict(NO_CACHE_HEADERS)
    result.headers[ADS_INJECTED_HEADER] = "true"

    if config.debug_mode:
        logger.info(
            "Smalk Ads: injected %d of %d ad(s) and disabled caching for %s",
            result.injected,
            len(placeholders),
            context.url,
        )
    return result


# ------------------------------------------------------------------------------
# Visit tracking
# ------------------------------------------------------------------------------

def should_track(context: RequestContext, config: SmalkConfig) -> bool:
    if not (config.enabled and config.tracking_enabled):
        return False
    if not config.api_key:
        return False
    if is_path_excluded(context.path, config) or is_static_asset(context.path):
        return False
    return True


def report_visit(context: RequestContext, config: SmalkConfig) -> None:
    if not should_track(context, config):
        return
    if config.debug_mode:
        logger.info("Smalk Tracking: sending tracking for %s", context.path)
    send_visit(build_tracking_payload(context), config)


# ------------------------------------------------------------------------------
# Page cache
# ------------------------------------------------------------------------------

@dataclass
class CachedPage:
    html: str
    compressed: bytes


def get_page_cache_path(path: str, query: str) -> Path:
    key_source = f"{path}?{query}" if query else path
    digest = hashlib.md5(key_source.encode("utf-8")).hexdigest()
    return Path(PAGE_CACHE_DIR) / f"{digest}.html.gz"


def load_cached_page(cache_path: Path) -> CachedPage | None:
    try:
        compressed = cache_path.read_bytes()
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.exception("Failed to read cached page %s: %s", cache_path, exc)
        return None

    try:
        html = gzip.decompress(compressed).decode("utf-8")
    except (OSError, EOFError, UnicodeDecodeError) as exc:
        logger.warning("Discarding unreadable cached page %s: %s", cache_path, exc)
        return None
    return CachedPage(html=html, compressed=compressed)


def temp_cache_path(cache_path: Path) -> Path:
    # One writer per process and thread, so concurrent stores never share a temp file.
    return cache_path.parent / f"{cache_path.name}.{os.getpid()}.{threading.get_ident()}.tmp"


def cache_page(cache_path: Path, content: str) -> None:
    temp_path = temp_cache_path(cache_path)
    try:
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path.write_bytes(gzip.compress(content.encode("utf-8")))
        temp_path.replace(cache_path)
        logger.info("Cached page at %s", cache_path)
    except OSError as exc:
        logger.exception("Failed to write cached page %s: %s", cache_path, exc)
        temp_path.unlink(missing_ok=True)


def may_store_page(status_code: int, headers: Mapping[str, str]) -> bool:
    if status_code != 200:
        return False
    if (headers.get(ADS_INJECTED_HEADER) or "").lower() == "true":
        return False
    cache_control = (headers.get("Cache-Control") or "").lower()
    directives = {part.strip() for part in cache_control.split(",")}
    return not ({"no-store", "private"} & directives)


def serve_cached_page(cached_page: CachedPage, request: Request) -> Response:
    accept_encoding = request.headers.get("accept-encoding", "")
    headers = {"Vary": "Accept-Encoding"}
    if "gzip" in accept_encoding.lower():
        headers["Content-Encoding"] = "gzip"
        return Response(
            content=cached_page.compressed,
            status_code=200,
            media_type="text/html; charset=utf-8",
            headers=headers,
        )
    return Response(
        content=cached_page.html,
        status_code=200,
        media_type="text/html; charset=utf-8",
        headers=headers,
    )


# ------------------------------------------------------------------------------
# Proxy endpoint
# ------------------------------------------------------------------------------

FORWARDED_METHODS = ["HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def build_target_url(config: SmalkConfig, path: str, query_string: str) -> str:
    target_url = f"{config.origin_url.rstrip('/')}/{path.lstrip('/')}"
    if query_string:
        target_url = f"{target_url}?{query_string}"
    return target_url


def passthrough_response(upstream_response: requests.Response) -> Response:
    response_headers = dict(upstream_response.headers)
    response_headers.pop("Content-Encoding", None)
    response_headers.pop("Transfer-Encoding", None)
    response_headers.pop("Content-Length", None)
    return Response(
        content=upstream_response.content,
        status_code=upstream_response.status_code,
        headers=response_headers,
    )


@app.api_route("/{path:path}", methods=FORWARDED_METHODS)
async def forward_site(path: str, request: Request, background_tasks: BackgroundTasks) -> Response:
    context = build_request_context(request)
    config = build_smalk_config(await run_in_threadpool(load_config_map))
    background_tasks.add_task(report_visit, context, config)

    target_url = build_target_url(config, path, request.url.query or "")
    headers = {"User-Agent": UPSTREAM_USER_AGENT}
    if "content-type" in request.headers:
        headers["Content-Type"] = request.headers["content-type"]
    body = await request.body()

    try:
        upstream_response = await run_in_threadpool(
            requests.request,
            request.method,
            target_url,
            data=body,
            headers=headers,
            timeout=15,
            allow_redirects=False,
        )
    except requests.RequestException as exc:
        logger.exception("Error forwarding %s %s: %s", request.method, target_url, exc)
        return HTMLResponse(content=f"Error fetching content: {exc}", status_code=502)

    return passthrough_response(upstream_response)


@app.get("/{path:path}")
def proxy_site(path: str, request: Request, background_tasks: BackgroundTasks) -> Response:
    context = build_request_context(request)
    config = build_smalk_config(load_config_map())

    # Tracking is queued ahead of the cache lookup so cached hits are counted too.
    background_tasks.add_task(report_visit, context, config)

    query_string = request.url.query or ""
    cache_path: Path | None = None
    if config.page_cache_enabled:
        cache_path = get_page_cache_path(path, query_string)
        cached_page = load_cached_page(cache_path)
        if cached_page is not None:
            logger.info("Serving cached page for %s?%s", path, query_string)
            return serve_cached_page(cached_page, request)

    target_url = build_target_url(config, path, query_string)

    try:
        upstream_response = requests.get(
            target_url,
            headers={"User-Agent": UPSTREAM_USER_AGENT},
            timeout=15,
        )
    except requests.RequestException as exc:
        logger.exception("Error fetching %s: %s", target_url, exc)
        return HTMLResponse(content=f"Error fetching content: {exc}", status_code=502)

    content_type = upstream_response.headers.get("Content-Type", "")
    if not is_html_content_type(content_type):
        return passthrough_response(upstream_response)

    rendered = upstream_response.text
    extra_headers: Dict[str, str] = {}
    try:
        injection = inject_ads(rendered, content_type, context, config)
        rendered = injection.html
        extra_headers = injection.headers
    except Exception as exc:
        logger.exception("Ad injection failed for %s; serving page unmodified: %s", context.path, exc)

    response = HTMLResponse(
        content=rendered,
        status_code=upstream_response.status_code,
        headers=extra_headers,
    )

    if cache_path is not None and may_store_page(response.status_code, response.headers):
        cache_page(cache_path, rendered)
    return response


# expose ASGI app
application = app

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
