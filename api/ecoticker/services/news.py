"""
News retrieval - GNews search API and environmental RSS feeds.

A failing keyword group or feed is logged and skipped; the other sources
still contribute. Merging puts RSS first so RSS wins cross-source duplicates.
"""
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional
from urllib.parse import urlparse

import feedparser
import httpx
import structlog

logger = structlog.get_logger()

GNEWS_URL = "https://gnews.io/api/v4/search"
USER_AGENT = "EcoTicker/1.0"

BLOCKED_DOMAINS = (
    "lifesciencesworld.com",
    "alltoc.com",
)

# Marketplace listings that slip through keyword search
JUNK_SOURCE_MARKERS = ("bringatrailer", "auction", "ebay")

DEFAULT_FEEDS = (
    "https://www.theguardian.com/uk/environment/rss",
    "https://grist.org/feed/",
    "https://www.carbonbrief.org/feed/",
    "https://insideclimatenews.org/feed/",
    "https://www.eia.gov/rss/todayinenergy.xml",
    "https://www.eea.europa.eu/en/newsroom/rss-feeds/eeas-press-releases-rss",
    "https://www.ecowatch.com/feed",
    "https://feeds.npr.org/1025/rss.xml",
    "https://www.downtoearth.org.in/feed",
    "https://india.mongabay.com/feed/",
)


@dataclass
class FetchedArticle:
    title: str
    url: str
    source: str
    summary: Optional[str]
    image_url: Optional[str]
    published_at: Optional[datetime]
    source_type: str = "unknown"


@dataclass
class FeedHealth:
    url: str
    name: str
    ok: bool
    article_count: int
    duration_ms: int
    error: Optional[str] = None


def hostname(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def is_blocked_domain(url: str) -> bool:
    host = hostname(url)
    return any(host == d or host.endswith(f".{d}") for d in BLOCKED_DOMAINS)


def keyword_groups(keywords: list[str], group_size: int = 4) -> list[str]:
    return [" OR ".join(keywords[i:i + group_size]) for i in range(0, len(keywords), group_size)]


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def _entry_date(entry) -> Optional[datetime]:
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            return datetime(*parsed[:6], tzinfo=timezone.utc)
    return _parse_date(entry.get("published") or entry.get("updated"))


def _entry_image(entry) -> Optional[str]:
    for enclosure in entry.get("enclosures", []) or []:
        if enclosure.get("href"):
            return enclosure["href"]
    media = entry.get("media_content") or entry.get("media_thumbnail")
    if media and media[0].get("url"):
        return media[0]["url"]
    return None


def fetch_gnews(keywords: list[str], api_key: Optional[str], group_size: int = 4,
                timeout: float = 15.0, client: Optional[httpx.Client] = None) -> list[FetchedArticle]:
    if not api_key:
        logger.warning("news: GNEWS_API_KEY not set, skipping GNews")
        return []

    own_client = client is None
    client = client or httpx.Client(timeout=timeout)
    articles: list[FetchedArticle] = []
    try:
        for query in keyword_groups(keywords, group_size):
            try:
                r = client.get(GNEWS_URL, params={
                    "q": query, "lang": "en", "max": 10, "sortby": "publishedAt", "token": api_key,
                })
                data = r.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.error("news: GNews request failed", query=query, error=str(e))
                continue

            if not isinstance(data, dict):
                logger.error("news: GNews returned an unexpected body", query=query, status=r.status_code)
                continue

            if data.get("errors"):
                logger.error("news: GNews error", query=query, status=r.status_code,
                             error=str(data["errors"][0]))
                continue

            for a in data.get("articles") or []:
                if not isinstance(a, dict):
                    continue
                source_info = a.get("source")
                source = ((source_info.get("name") if isinstance(source_info, dict) else None) or "").strip()
                url = a.get("url") or ""
                marker_text = f"{source.lower()} {hostname(url)}"
                if any(m in marker_text for m in JUNK_SOURCE_MARKERS):
                    continue
                if not a.get("title") or not a.get("description") or not url:
                    continue
                articles.append(FetchedArticle(
                    title=a["title"], url=url, source=source or "GNews",
                    summary=a.get("description"), image_url=a.get("image"),
                    published_at=_parse_date(a.get("publishedAt")), source_type="gnews",
                ))
    finally:
        if own_client:
            client.close()

    logger.info("news: GNews fetched", articles=len(articles))
    return articles


def _fetch_feed(client: httpx.Client, url: str) -> tuple[list[FetchedArticle], FeedHealth]:
    start = time.monotonic()
    try:
        r = client.get(url, headers={"User-Agent": USER_AGENT}, follow_redirects=True)
        r.raise_for_status()
    except httpx.HTTPError as e:
        elapsed = int((time.monotonic() - start) * 1000)
        logger.error("news: feed fetch failed", feed=hostname(url), error=str(e))
        return [], FeedHealth(url, hostname(url), False, 0, elapsed, str(e))

    feed = feedparser.parse(r.text)
    name = feed.feed.get("title") or hostname(url)
    articles = []
    for entry in feed.entries:
        title, link = entry.get("title"), entry.get("link")
        if not title or not link:
            continue
        published = _entry_date(entry)
        if published is None:
            logger.debug("news: skipping undated entry", feed=name, title=title[:80])
            continue
        articles.append(FetchedArticle(
            title=title[:500], url=link, source=name,
            summary=(entry.get("summary") or None), image_url=_entry_image(entry),
            published_at=published, source_type="rss",
        ))
    elapsed = int((time.monotonic() - start) * 1000)
    return articles, FeedHealth(url, name, True, len(articles), elapsed)


def fetch_rss(feeds: list[str], timeout: float = 15.0,
              client: Optional[httpx.Client] = None) -> tuple[list[FetchedArticle], list[FeedHealth]]:
    own_client = client is None
    client = client or httpx.Client(timeout=timeout)
    articles: list[FetchedArticle] = []
    health: list[FeedHealth] = []
    try:
        with ThreadPoolExecutor(max_workers=min(8, max(1, len(feeds)))) as pool:
            for feed_articles, feed_health in pool.map(lambda u: _fetch_feed(client, u), feeds):
                articles.extend(feed_articles)
                health.append(feed_health)
    finally:
        if own_client:
            client.close()

    healthy = sum(1 for h in health if h.ok)
    logger.info("news: feed health", healthy=healthy, total=len(health),
                failed=[h.name for h in health if not h.ok])
    return articles, health


def merge_and_dedup(rss_articles: list[FetchedArticle],
                    gnews_articles: list[FetchedArticle]) -> list[FetchedArticle]:
    seen: set[str] = set()
    merged = []
    blocked = 0
    for article in [*rss_articles, *gnews_articles]:
        if not article.url or article.url in seen:
            continue
        if is_blocked_domain(article.url):
            blocked += 1
            continue
        seen.add(article.url)
        merged.append(article)
    if blocked:
        logger.info("news: blocked junk-domain articles", count=blocked)
    return merged


def feeds_from_settings(settings) -> list[str]:
    if settings.RSS_FEEDS:
        return [u.strip() for u in settings.RSS_FEEDS.split(",") if u.strip()]
    return list(DEFAULT_FEEDS)
