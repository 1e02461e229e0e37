"""
text.py — Text normalization helpers shared by every stage

Lower-casing, accent folding, whitespace collapsing, signature / disclaimer /
quoted-history trimming, subject normalization, HTML → text.

All functions are pure and accept None (treated as "").
"""

import re
import unicodedata

from bs4 import BeautifulSoup

# ─── Patterns ────────────────────────────────────────────────────────────────

# Signature separators only count past this offset, so a greeting like
# "Regards, see list below" at the top of a short mail is not cut.
SIGNATURE_MIN_OFFSET = 200

SIGNATURE_PATTERNS = [
    re.compile(r"^\s*--\s*$", re.M),
    re.compile(r"^\s*_{3,}\s*$", re.M),
    re.compile(r"^\s*(cordialement|bien cordialement|salutations)\b", re.M | re.I),
    re.compile(r"^\s*(best regards|kind regards|regards|best wishes)\b", re.M | re.I),
    re.compile(r"^\s*sent from my\b", re.M | re.I),
    re.compile(r"^\s*envoy[ée] (depuis|de mon)\b", re.M | re.I),
    re.compile(r"^\s*get outlook for\b", re.M | re.I),
]

DISCLAIMER_PATTERNS = [
    re.compile(r"(this|the information in this) e-?mail (and any attachments? )?(is|are|contains?) (strictly )?confidential", re.I),
    re.compile(r"confidentiality notice", re.I),
    re.compile(r"ce (message|courriel|mail)( et (toutes )?(les|ses) pi[eè]ces jointes)? (est|sont) (strictement )?confidentiel", re.I),
    re.compile(r"avis de confidentialit[ée]", re.I),
]

QUOTE_HEADER_PATTERNS = [
    re.compile(r"^\s*On .{1,200}wrote:\s*$", re.M | re.I),
    re.compile(r"^\s*Le .{1,200}a [ée]crit\s*:\s*$", re.M | re.I),
    re.compile(r"^\s*-{2,}\s*(Original Message|Message d'origine|Message original)\s*-{2,}", re.M | re.I),
    re.compile(r"^\s*(From|De)\s*:.*\n\s*(Sent|Envoy[ée]|Date)\s*:", re.M | re.I),
]

REPLY_PREFIX = re.compile(
    r"^\s*(?:(?:re|fw|fwd|tr|aw|wg|r[ée]f|rif)\s*(?:\[\d+\])?\s*:\s*|\[[^\]]{0,40}\]\s*)+",
    re.I,
)

_WS = re.compile(r"\s+")
_EMAIL_ADDR = re.compile(r"[\w.+'-]+@[\w-]+(?:\.[\w-]+)+")


# ─── Core normalization ─────────────────────────────────────────────────────

def strip_accents(text: str) -> str:
    """é → e, ç → c. Combining marks are dropped after NFKD."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def normalize(text: str) -> str:
    """Lower-case, accent-fold and collapse whitespace."""
    if not text:
        return ""
    return _WS.sub(" ", strip_accents(text).lower()).strip()


def normalize_lines(text: str) -> str:
    """Like normalize() but keeps line breaks (for line-anchored patterns)."""
    if not text:
        return ""
    lines = [re.sub(r"[ \t\f\v]+", " ", l).strip() for l in strip_accents(text).lower().splitlines()]
    return "\n".join(lines)


# ─── Body trimming ───────────────────────────────────────────────────────────

def strip_quoted(body: str) -> str:
    """Remove quoted history: '>' lines and everything after a reply header."""
    if not body:
        return ""
    cut = len(body)
    for pat in QUOTE_HEADER_PATTERNS:
        m = pat.search(body)
        if m and m.start() < cut:
            cut = m.start()
    kept = [l for l in body[:cut].splitlines() if not l.lstrip().startswith(">")]
    return "\n".join(kept).strip()


def strip_signature(body: str) -> str:
    """Cut at the first signature separator or disclaimer past the minimum offset."""
    if not body:
        return ""
    cut = len(body)
    for pat in SIGNATURE_PATTERNS:
        for m in pat.finditer(body):
            if m.start() > SIGNATURE_MIN_OFFSET:
                cut = min(cut, m.start())
                break
    for pat in DISCLAIMER_PATTERNS:
        m = pat.search(body)
        if m:
            cut = min(cut, m.start())
    return body[:cut].strip()


def body_window(body: str, limit: int = 6000) -> str:
    if not body:
        return ""
    return body[:limit]


def clean_body(body: str, limit: int = 6000) -> str:
    """Quoted history and signature removed, then windowed."""
    return body_window(strip_signature(strip_quoted(body)), limit)


def html_to_text(html: str) -> str:
    """Render an HTML body as plain text, one block per line."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    text = soup.get_text("\n")
    lines = [l.strip() for l in text.splitlines()]
    return "\n".join(l for l in lines if l)


def message_text(body: str, body_html: str = None) -> str:
    """Plain body, or the rendered HTML body when the plain one is empty."""
    if body and body.strip():
        return body
    return html_to_text(body_html or "")


# ─── Subjects & addresses ────────────────────────────────────────────────────

def normalize_subject(subject: str) -> str:
    """'RE: TR: [EXT] Demande de prix' → 'demande de prix'."""
    if not subject:
        return ""
    return normalize(REPLY_PREFIX.sub("", subject))


def is_reply_subject(subject: str) -> bool:
    return bool(subject and re.match(r"^\s*(re|fw|fwd|tr|aw|wg)\s*(\[\d+\])?\s*:", subject, re.I))


def extract_email_address(sender: str) -> str:
    """'Jane <Jane@ACME.com>' → 'jane@acme.com'."""
    if not sender:
        return ""
    m = _EMAIL_ADDR.search(sender)
    return m.group(0).lower() if m else sender.strip().lower()


def extract_sender_name(sender: str) -> str:
    """Display name from 'Name <addr>', or '' when absent."""
    if not sender or "<" not in sender:
        return ""
    return sender.split("<", 1)[0].strip().strip('"').strip()


def email_domain(address: str) -> str:
    addr = extract_email_address(address)
    return addr.split("@", 1)[1] if "@" in addr else ""
