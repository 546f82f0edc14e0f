"""
Book storage and ingestion building blocks.

    - models.py: BookAsset, ReadingProgress and format enums
    - epub.py: EPUB container parsing (metadata, cover)
    - converter.py: external format converters
    - repository.py: SQLite persistence
"""
