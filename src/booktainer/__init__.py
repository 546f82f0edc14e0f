"""
booktainer: self-hosted e-book library with a reader-facing speech service.

Books are uploaded, normalized into a renderable format (mobi -> epub),
mined for title, author and cover, and served back with byte-range support.
Any passage can be read aloud through an online (OpenAI) or offline (Piper)
voice; synthesized audio is cached on disk by content.

Example Usage:
    >>> from booktainer.library import epub
    >>> metadata, cover = epub.extract(open("book.epub", "rb").read())
    >>> metadata.title
    'Moby Dick'
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
