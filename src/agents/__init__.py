"""Classifiers and the fallback extractor.

Modules:
    message_classifier     — REQUEST / SUPPLIER_OFFER / PURCHASE_ORDER /
                             REMINDER_DUPLICATE / AMBIGUOUS
    attachment_classifier  — request documents, technical sheets, images; grouping
    fallback_extractor     — Claude-backed extraction for hard documents
"""
