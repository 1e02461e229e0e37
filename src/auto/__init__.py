"""Intake workflow.

    classify → attachments → extract (+ escalation) → assemble
"""
