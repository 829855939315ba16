# locator.py
"""
Resolve a catalog entry's detail page into a playable MediaReference.

Strategies run in a fixed order and the first one that yields a URL wins:
player mount, <video>, <source>, inline scripts (with caption probing),
data attributes, and finally paths built from the entry title.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from httpx import AsyncClient, RequestError

from .config import Settings
from .models import CatalogEntry, MediaReference, ResolvedAudioTrack, SubtitleTrack

logger = logging.getLogger(__name__)

PLAYER_MOUNT_SELECTOR = "#video_html5_api"

SCRIPT_MP4_PATTERNS = [
    re.compile(r'https?://[^\s"\']+\.mp4', re.IGNORECASE),
    re.compile(r'["\']([^"\']+\.mp4)["\']', re.IGNORECASE),
    re.compile(r'src["\']?\s*[:=]\s*["\']([^"\']+\.mp4)["\']', re.IGNORECASE),
    re.compile(r'file["\']?\s*[:=]\s*["\']([^"\']+\.mp4)["\']', re.IGNORECASE),
    re.compile(r'source["\']?\s*[:=]\s*["\']([^"\']+\.mp4)["\']', re.IGNORECASE),
    re.compile(r'video["\']?\s*[:=]\s*["\']([^"\']+\.mp4)["\']', re.IGNORECASE),
    re.compile(r'url["\']?\s*[:=]\s*["\']([^"\']+\.mp4)["\']', re.IGNORECASE),
]

SCRIPT_VTT_PATTERNS = [
    re.compile(r'https?://[^\s"\']+\.vtt', re.IGNORECASE),
    re.compile(r'["\']([^"\']+\.vtt)["\']', re.IGNORECASE),
]

LANGUAGE_SUFFIX_RE = re.compile(r'-(?:Hindi|English)$', re.IGNORECASE)

SUBTITLE_LANGUAGES = [
    ("-Hindi", "hi", "Hindi"),
    ("-English", "en", "English"),
]

Probe = Callable[[str], Awaitable[bool]]


@dataclass
class LocatorContext:
    soup: BeautifulSoup
    entry: CatalogEntry
    settings: Settings
    probe: Optional[Probe] = None
    subtitle_urls: List[str] = field(default_factory=list)

    def qualifies(self, url: Optional[str]) -> bool:
        return bool(url) and (self.settings.media_marker in url or '.mp4' in url)

    def absolute(self, url: str) -> str:
        url = url.strip()
        if url.startswith(('http://', 'https://')):
            return url
        if url.startswith('//'):
            return 'https:' + url
        return urljoin(self.entry.detail_url, url)


Strategy = Callable[[LocatorContext], Awaitable[Optional[str]]]


# Helper function to build a ranged probe for candidate media URLs
def make_probe(client: AsyncClient) -> Probe:
    async def probe(url: str) -> bool:
        # Only the status matters; origins that ignore Range would send the whole file
        async with client.stream("GET", url, headers={"Range": "bytes=0-1"}) as response:
            return 200 <= response.status_code < 300
    return probe


def infer_subtitle(url: str) -> SubtitleTrack:
    for marker, code, label in SUBTITLE_LANGUAGES:
        if marker in url:
            return SubtitleTrack(url=url, language=code, label=label)
    return SubtitleTrack(url=url, language="en", label="Subtitles")


def _script_match_url(match: re.Match) -> str:
    url = match.group(1) if match.groups() else match.group(0)
    return url.strip('"\'')


async def from_player_mount(ctx: LocatorContext) -> Optional[str]:
    player = ctx.soup.select_one(PLAYER_MOUNT_SELECTOR)
    if player is None:
        return None
    src = player.get('src')
    if not src:
        source = player.find('source')
        src = source.get('src') if source else None
    return src if ctx.qualifies(src) else None


async def from_video_elements(ctx: LocatorContext) -> Optional[str]:
    for video in ctx.soup.find_all('video'):
        src = video.get('src')
        if not src:
            source = video.find('source')
            src = source.get('src') if source else None
        if not src:
            src = video.get('data-src')
        if not src:
            src = video.get('data-video-src')
        if ctx.qualifies(src):
            return src
    return None


async def from_source_elements(ctx: LocatorContext) -> Optional[str]:
    for source in ctx.soup.find_all('source'):
        src = source.get('src') or source.get('data-src')
        if ctx.qualifies(src):
            return src
    return None


def _caption_media_candidate(caption_url: str) -> str:
    base = caption_url[:-len('.vtt')] if caption_url.lower().endswith('.vtt') else caption_url
    return LANGUAGE_SUFFIX_RE.sub('', base) + '.mp4'


async def _probe_caption_sibling(ctx: LocatorContext, caption_url: str) -> Optional[str]:
    candidate = ctx.absolute(_caption_media_candidate(caption_url))
    try:
        if await ctx.probe(candidate):
            return candidate
        return None
    except RequestError as e:
        logger.debug(f"Probe failed for {candidate}: {e}, retrying lower-cased")
    lowered = candidate.lower()
    try:
        if await ctx.probe(lowered):
            return lowered
    except RequestError as e:
        logger.debug(f"Probe failed for {lowered}: {e}")
    return None


def _first_script_mp4(content: str, marker: str) -> Optional[str]:
    for pattern in SCRIPT_MP4_PATTERNS:
        for match in pattern.finditer(content):
            url = _script_match_url(match)
            if marker in url and '.mp4' in url:
                return url
    return None


async def from_script_text(ctx: LocatorContext) -> Optional[str]:
    marker = ctx.settings.media_marker
    for script in ctx.soup.find_all('script'):
        content = script.string or script.get_text() or ''
        if '.mp4' not in content and '.vtt' not in content:
            continue

        media_url = _first_script_mp4(content, marker)

        # Captions are collected from the same script even when its mp4 is known
        for pattern in SCRIPT_VTT_PATTERNS:
            for match in pattern.finditer(content):
                url = _script_match_url(match)
                if marker not in url or '.vtt' not in url:
                    continue
                if url in ctx.subtitle_urls:
                    continue
                ctx.subtitle_urls.append(url)
                if media_url or ctx.probe is None:
                    continue
                media_url = await _probe_caption_sibling(ctx, url)

        if media_url:
            return media_url
    return None


async def from_data_attributes(ctx: LocatorContext) -> Optional[str]:
    for element in ctx.soup.find_all(True):
        value = element.get('data-video') or element.get('data-src') or element.get('data-url')
        if isinstance(value, str) and ctx.qualifies(value):
            return value
    return None


def candidate_paths(entry: CatalogEntry) -> List[str]:
    year_suffix = f"-{entry.year}" if entry.year else ""
    candidates = []
    for slug in (entry.clean_slug, entry.slug):
        if not slug:
            continue
        if year_suffix:
            candidates.append(f"{slug}{year_suffix}.mp4")
        candidates.append(f"{slug}.mp4")
    return candidates


async def from_constructed_paths(ctx: LocatorContext) -> Optional[str]:
    # Not probed: a wrong guess only shows up when playback starts
    paths = candidate_paths(ctx.entry)
    if not paths:
        return None
    return f"{ctx.settings.media_base_url}/{paths[0]}"


STRATEGIES: List[Tuple[str, Strategy]] = [
    ("player", from_player_mount),
    ("video", from_video_elements),
    ("source", from_source_elements),
    ("script", from_script_text),
    ("data-attribute", from_data_attributes),
    ("constructed", from_constructed_paths),
]


def language_variant(media_url: str, language: str) -> Optional[str]:
    """
    'https://h/dir/Troll-2-2025.mp4', 'Hindi' -> 'https://h/dir/Troll-2-2025-Hindi.mp4'

    The variant is a guess that is never probed; it can point at a file that
    does not exist upstream.
    """
    directory, _, filename = media_url.rpartition('/')
    if not directory or not filename.lower().endswith('.mp4'):
        return None
    base = LANGUAGE_SUFFIX_RE.sub('', filename[:-len('.mp4')])
    return f"{directory}/{base}-{language}.mp4"


def resolve_audio_tracks(entry: CatalogEntry, media_url: str, kind: str) -> List[ResolvedAudioTrack]:
    if len(entry.audio_tracks) <= 1:
        track = entry.audio_tracks[0] if entry.audio_tracks else None
        return [ResolvedAudioTrack(
            language=track.language if track else "English",
            label=track.label if track else "Default",
            media_url=media_url,
        )]

    resolved = []
    for track in entry.audio_tracks:
        variant = language_variant(media_url, track.language) if kind == "stream" else None
        if not variant or variant == media_url:
            variant = media_url
        resolved.append(ResolvedAudioTrack(language=track.language, label=track.label, media_url=variant))
    return resolved


async def locate(detail_html: str, entry: CatalogEntry, settings: Settings,
                 probe: Optional[Probe] = None) -> MediaReference:
    """
    Find the stream for `entry` in its detail page.

    `probe` checks candidate URLs with a ranged request; without it the
    caption-derived candidates are skipped.
    """
    ctx = LocatorContext(
        soup=BeautifulSoup(detail_html, 'html.parser'),
        entry=entry,
        settings=settings,
        probe=probe,
    )

    media_url = None
    strategy_name = None
    for name, strategy in STRATEGIES:
        found = await strategy(ctx)
        if found:
            media_url = ctx.absolute(found)
            strategy_name = name
            break

    kind = "stream"
    if not media_url:
        kind = "link"
        media_url = entry.detail_url
        strategy_name = "link"

    logger.info(f"Located media for {entry.title!r} via {strategy_name} ({len(ctx.subtitle_urls)} subtitles)")
    return MediaReference(
        media_url=media_url,
        kind=kind,
        subtitles=[infer_subtitle(ctx.absolute(url)) for url in ctx.subtitle_urls],
        audio_tracks=resolve_audio_tracks(entry, media_url, kind),
        strategy=strategy_name,
    )
