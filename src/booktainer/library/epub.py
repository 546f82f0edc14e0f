"""
EPUB container reading: bibliographic metadata and cover image.

An EPUB is a zip archive whose ``META-INF/container.xml`` names the
package document (OPF). The OPF carries Dublin Core metadata and a
manifest of every resource; the cover is found through the manifest.

Everything here is best effort. Malformed archives, missing entries and
broken XML all degrade to "no metadata" / "no cover" for callers of
``open_package`` and ``extract``; ``ParseError`` only escapes
``load_package`` for tools that want the reason.
"""
from __future__ import annotations

import io
import mimetypes
import posixpath
import zipfile
import zlib
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

from booktainer.core.logging import get_logger, verbose
from booktainer.services.errors import ParseError

_LOG = get_logger("booktainer.epub")

CONTAINER_PATH = "META-INF/container.xml"

_IMAGE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
}


@dataclass(frozen=True)
class BookMetadata:
    title: Optional[str] = None
    author: Optional[str] = None


@dataclass(frozen=True)
class CoverImage:
    data: bytes
    extension: str
    media_type: Optional[str]
    href: str


@dataclass
class EpubPackage:
    """
    An opened container plus its parsed package document.

    ``metadata`` maps local tag names (``title``, ``creator``, ``meta``...)
    to the elements found under ``<metadata>``; ``manifest`` is the list of
    ``<item>`` attribute dicts in document order.
    """
    archive: zipfile.ZipFile
    opf_path: str
    metadata: Dict[str, List[ET.Element]] = field(default_factory=dict)
    manifest: List[Dict[str, str]] = field(default_factory=list)

    @property
    def opf_dir(self) -> str:
        return posixpath.dirname(self.opf_path)

    def resolve(self, href: str) -> str:
        """Join a manifest href to the OPF directory as a normalized archive path."""
        joined = posixpath.join(self.opf_dir, href) if self.opf_dir else href
        return posixpath.normpath(joined)

    def read(self, name: str) -> Optional[bytes]:
        try:
            return self.archive.read(name)
        except KeyError:
            return None

    def close(self) -> None:
        self.archive.close()

    def __enter__(self) -> "EpubPackage":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _local(tag: Any) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _attr(elem: ET.Element, name: str) -> Optional[str]:
    for key, value in elem.attrib.items():
        if _local(key) == name:
            return value
    return None


def normalize_value(value: Any) -> Optional[str]:
    """
    Reduce a parsed metadata value to a trimmed string.

    Accepts a plain string, an XML element (its text content), or a list
    of either (the first entry wins). Empty results become None.
    """
    if value is None:
        return None
    if isinstance(value, list):
        return normalize_value(value[0]) if value else None
    if isinstance(value, ET.Element):
        value = "".join(value.itertext())
    if isinstance(value, str):
        return value.strip() or None
    return None


def load_package(data: bytes) -> Optional[EpubPackage]:
    """
    Open a container from raw bytes.

    Returns None when the archive has no container descriptor or no usable
    rootfile.

    Raises:
        ParseError: If the archive or one of its XML documents is corrupt.
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, ValueError) as e:
        raise ParseError(f"not a zip archive: {e}")

    try:
        container_xml = archive.read(CONTAINER_PATH)
    except KeyError:
        archive.close()
        return None
    except (zipfile.BadZipFile, zlib.error, OSError, RuntimeError) as e:
        archive.close()
        raise ParseError(f"unreadable container descriptor: {e}")

    try:
        container = ET.fromstring(container_xml)
        opf_path = None
        for elem in container.iter():
            if _local(elem.tag) == "rootfile" and elem.get("full-path"):
                opf_path = elem.get("full-path")
                break
        if not opf_path:
            archive.close()
            return None

        try:
            opf_xml = archive.read(opf_path)
        except KeyError:
            archive.close()
            return None
        opf = ET.fromstring(opf_xml)
    except ET.ParseError as e:
        archive.close()
        raise ParseError(f"malformed XML: {e}")
    except (zipfile.BadZipFile, zlib.error, OSError, RuntimeError) as e:
        archive.close()
        raise ParseError(f"unreadable package document: {e}")

    package = EpubPackage(archive=archive, opf_path=opf_path)
    for section in opf:
        name = _local(section.tag)
        if name == "metadata":
            for child in section:
                package.metadata.setdefault(_local(child.tag), []).append(child)
        elif name == "manifest":
            for item in section:
                if _local(item.tag) == "item":
                    package.manifest.append({_local(k): v for k, v in item.attrib.items()})
    return package


def open_package(data: bytes) -> Optional[EpubPackage]:
    """Like load_package, but any parse failure means "no package"."""
    try:
        return load_package(data)
    except ParseError as e:
        verbose(_LOG, "epub_unreadable", error=e.message)
        return None


def read_metadata(package: EpubPackage) -> BookMetadata:
    return BookMetadata(
        title=normalize_value(package.metadata.get("title")),
        author=normalize_value(package.metadata.get("creator")),
    )


def _cover_item(package: EpubPackage) -> Optional[Dict[str, str]]:
    # EPUB 2: <meta name="cover" content="<manifest id>"/>
    for meta in package.metadata.get("meta", []):
        if _attr(meta, "name") == "cover":
            cover_id = _attr(meta, "content")
            if cover_id:
                for item in package.manifest:
                    if item.get("id") == cover_id:
                        return item
            break

    # EPUB 3: properties="cover-image"
    for item in package.manifest:
        if "cover-image" in item.get("properties", "").split():
            return item
    return None


def _extension_for(media_type: Optional[str], href: str) -> str:
    if media_type:
        media_type = media_type.split(";", 1)[0].strip().lower()
        ext = _IMAGE_EXTENSIONS.get(media_type)
        if ext:
            return ext
        guessed = mimetypes.guess_extension(media_type)
        if guessed:
            return guessed.lstrip(".").lower()
    ext = posixpath.splitext(href)[1].lstrip(".").lower()
    return ext or "jpg"


def find_cover(package: EpubPackage) -> Optional[CoverImage]:
    item = _cover_item(package)
    if not item or not item.get("href"):
        return None

    href = item["href"]
    data = package.read(package.resolve(href))
    if data is None and unquote(href) != href:
        data = package.read(package.resolve(unquote(href)))
    if data is None:
        return None

    media_type = item.get("media-type")
    return CoverImage(
        data=data,
        extension=_extension_for(media_type, href),
        media_type=media_type,
        href=href,
    )


def extract(data: bytes) -> Tuple[BookMetadata, Optional[CoverImage]]:
    """Metadata and cover of a container; empty results for anything unreadable."""
    package = open_package(data)
    if package is None:
        return BookMetadata(), None
    with package:
        try:
            return read_metadata(package), find_cover(package)
        except (zipfile.BadZipFile, zlib.error, OSError, RuntimeError) as e:
            verbose(_LOG, "epub_entry_unreadable", error=str(e))
            return BookMetadata(), None
