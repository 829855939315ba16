# models.py
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional

class AudioTrack(BaseModel):
    language: str = Field(..., description="Audio language (e.g., Hindi, English)")
    source_url: str = Field(..., description="Listing link the track was discovered on")
    label: str = Field(..., description="Display label for the track")

    class Config:
        from_attributes = True

class CatalogEntry(BaseModel):
    id: str = Field(..., description="Stable identifier derived from title and year")
    title: str = Field(..., description="Canonical title without language or parenthetical noise")
    year: Optional[str] = Field(default=None, description="Release year")
    image_url: Optional[str] = Field(default=None, description="Poster URL")
    detail_url: str = Field(..., description="Content detail page URL")
    rating: Optional[str] = Field(default=None, description="Rating as displayed on the listing")
    runtime: Optional[str] = Field(default=None, description="Duration as displayed on the listing")
    genres: List[str] = Field(default_factory=list, description="List of genres")
    audio_tracks: List[AudioTrack] = Field(default_factory=list, description="Available audio languages")
    slug: str = Field(default="", description="Lower-case hyphenated title")
    clean_slug: str = Field(default="", description="Title-Case hyphenated title")

    class Config:
        from_attributes = True

    def has_language(self, language: str) -> bool:
        return any(track.language == language for track in self.audio_tracks)

class CatalogPage(BaseModel):
    entries: List[CatalogEntry] = Field(default_factory=list, description="Entries sorted newest first")
    page: int = Field(1, description="Page number that was fetched")
    max_page: int = Field(1, description="Detected (or estimated) number of pages")
    category: str = Field("all", description="Category id")
    query: Optional[str] = Field(None, description="Search text, if this is a search")
    has_more: bool = Field(False, description="Whether another page can be requested")
    version: int = Field(0, description="Poster update version at snapshot time")

    class Config:
        from_attributes = True

class PosterUpdate(BaseModel):
    version: int = Field(..., description="Monotonic update number")
    entry_id: str = Field(..., description="Entry whose poster changed")
    image_url: str = Field(..., description="New poster URL")

class SubtitleTrack(BaseModel):
    url: str = Field(..., description="Caption file URL")
    language: str = Field("en", description="Language code inferred from the filename")
    label: str = Field("Subtitles", description="Display label")

class ResolvedAudioTrack(BaseModel):
    language: str = Field(..., description="Audio language")
    label: str = Field(..., description="Display label")
    media_url: str = Field(..., description="Best-effort stream URL for this language")

class MediaReference(BaseModel):
    media_url: str = Field(..., description="Primary stream URL, or the detail page for kind=link")
    kind: Literal["stream", "link"] = Field(..., description="'stream' for playable media, 'link' when nothing was found")
    subtitles: List[SubtitleTrack] = Field(default_factory=list, description="Caption tracks")
    audio_tracks: List[ResolvedAudioTrack] = Field(default_factory=list, description="Audio variants")
    strategy: Optional[str] = Field(None, description="Locator step that produced media_url")

    class Config:
        from_attributes = True

class ErrorResponse(BaseModel):
    error: str = Field(..., description="Error message")
    code: Optional[int] = Field(None, description="HTTP status code")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")

    class Config:
        from_attributes = True
