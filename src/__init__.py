"""
RFQ Intake — inbound price-request classification and line-item extraction

Packages:
    api/        HTTP blueprint and decision traces
    forms/      Document reading (PDF, Excel, Word, text) and item extraction
    agents/     Message and attachment classifiers, LLM fallback extractor
    auto/       Intake workflow (LangGraph) and the escalation policy
    core/       Models, settings, secrets, paths, text helpers, lookups
"""
