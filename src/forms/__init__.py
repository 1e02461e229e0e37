"""Document reading and line-item extraction.

Key exports:
    read_document()     — text + tables from PDF / Excel / CSV / Word / text
    extract_items()     — table → text → body layers into an ExtractionResult
    make_placeholder_item() — the single line used when nothing was found
"""
