"""
keywords.py — Keyword / pattern tables for the message classifier

Every table is an ordered tuple of Rule values, evaluated in order. The
whole configuration is a frozen KeywordConfig built once and injected into
MessageClassifier; tests build variants with dataclasses.replace().

Patterns run against normalized text (lower-case, accents folded), so write
them without accents: "validite", not "validité".

Overrides: RFQ_KEYWORDS_FILE may point at a JSON file whose keys are table
names and whose values are lists of {"pattern", "label", "weight", "scope"}.
A table present in the file replaces the default table of that name.
"""

import json
import logging
import re
from dataclasses import dataclass, field, fields, replace

log = logging.getLogger("rfq.keywords")


@dataclass(frozen=True)
class Rule:
    pattern: str
    label: str
    weight: float = 0.0
    scope: str = "any"        # subject | body | any
    regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "regex", re.compile(self.pattern, re.I | re.M))

    def applies_to(self, where: str) -> bool:
        return self.scope == "any" or self.scope == where

    def search(self, text: str):
        return self.regex.search(text or "")

    @classmethod
    def from_dict(cls, d: dict) -> "Rule":
        return cls(pattern=d["pattern"], label=d.get("label") or d["pattern"],
                   weight=float(d.get("weight", 0)), scope=d.get("scope", "any"))


def _rules(*specs) -> tuple:
    return tuple(Rule(*s) for s in specs)


# ═══════════════════════════════════════════════════════════════════════
# Purchase-order exclusion: first match wins
# ═══════════════════════════════════════════════════════════════════════

PO_RULES = _rules(
    (r"^(?:(?:re|fw|fwd|tr)\s*:\s*)*\[?po\b", "subject starts with PO", 0, "subject"),
    (r"\bbon\s*de\s*commande\b", "bon de commande"),
    (r"\bcommande\s*(?:n|no)\s*[°o.:]?\s*\d+", "commande n°"),
    (r"\bbc\s*n\s*[°o.]?\s*\d+", "BC n°"),
    (r"\bpurchase\s*order\b", "purchase order"),
    (r"\bp\.?o\.?\s*#\s*\d+", "PO #"),
    (r"\bpo\s*(?:number|no\.?|n°)\s*:?\s*\d+", "PO number"),
    (r"\border\s+(?:confirmation|acknowledge?ment)\b", "order confirmation"),
    (r"\bconfirmation\s+de\s+(?:la\s+)?commande\b", "confirmation de commande"),
    (r"\baccuse\s+de\s+reception\s+de\s+(?:la\s+)?commande\b", "accuse de reception de commande"),
    (r"\bsuivi\s+de\s+(?:la\s+)?commande\b", "suivi de commande"),
)

# Attachment names that identify a purchase order
PO_FILENAME_RULES = _rules(
    (r"bon[\s_-]*de[\s_-]*commande.*\.pdf$", "PO attachment (bon de commande)"),
    (r"purchase[\s_-]*order.*\.pdf$", "PO attachment (purchase order)"),
    (r"^po[\s_-]?\d+\.pdf$", "PO attachment (PO-number)"),
    (r"^commande[\s_-]?\d+\.pdf$", "PO attachment (commande-number)"),
)


# ═══════════════════════════════════════════════════════════════════════
# Explicit-request fast path
# ═══════════════════════════════════════════════════════════════════════

EXPLICIT_SUBJECT_RULES = _rules(
    (r"\brfq\b", "RFQ in subject"),
    (r"\brequest\s+for\s+(?:quotation|quote)s?\b", "request for quotation in subject"),
    (r"\bdemande\s+de\s+(?:prix|cotation|devis)\b", "demande de prix in subject"),
    (r"\bappel\s+d'?\s*offres?\b", "appel d'offres in subject"),
    (r"\b(?:quotation|price|quote)\s+request\s+(?:for|#|n°|no\.?)", "quotation request in subject"),
)

EXPLICIT_BODY_RULES = _rules(
    (r"\b(?:please|kindly)\s+quote\s+(?:us|me|the\s+following|your\s+best|for)\b", "please quote"),
    (r"\b(?:please|kindly)\s+(?:send|provide|give)\s+(?:us\s+)?(?:with\s+)?your\s+(?:best\s+)?(?:price|quotation|quote|offer)s?\b",
     "please provide your best price"),
    (r"\bmerci\s+de\s+(?:bien\s+vouloir\s+)?(?:nous\s+)?(?:coter|chiffrer)\b", "merci de nous coter"),
    (r"\bmerci\s+de\s+(?:bien\s+vouloir\s+)?(?:nous\s+)?(?:transmettre|faire\s+parvenir|communiquer)\s+(?:votre|vos)\s+(?:meilleure?s?\s+)?(?:prix|offre|cotation|devis)",
     "merci de nous transmettre votre offre"),
    (r"\bpriere\s+de\s+(?:nous\s+)?faire\s+parvenir\s+(?:votre|vos)\s+(?:meilleure?s?\s+)?(?:offre|prix)", "priere de faire parvenir"),
)


# ═══════════════════════════════════════════════════════════════════════
# Weighted scoring: subject hits count x1.5, body hits x1.0
# ═══════════════════════════════════════════════════════════════════════

SUBJECT_MULTIPLIER = 1.5

REQUEST_RULES = _rules(
    # strong
    (r"\bdemande\s+de\s+(?:prix|cotation|devis|tarif)", "demande de prix", 3),
    (r"\brequest\s+for\s+(?:quotation|quote|proposal|pricing)", "request for quotation", 3),
    (r"\b(?:price|quote|quotation)\s+(?:request|inquiry|enquiry)\b", "price request", 3),
    (r"\brf[qp]\b", "RFQ/RFP", 3),
    (r"\bconsultation\b", "consultation", 2),
    # medium
    (r"\b(?:pourriez|pouvez)[-\s]vous\s+(?:nous\s+)?(?:coter|chiffrer|faire\s+(?:une|votre)\s+offre|communiquer\s+(?:vos|votre)\s+prix)", "pourriez-vous nous coter", 2),
    (r"\b(?:could|can)\s+you\s+(?:please\s+)?(?:quote|price|send\s+(?:us\s+)?(?:a\s+)?(?:quotation|quote|price))", "could you quote", 2),
    (r"\bmeilleure?s?\s+(?:prix|offre|delai)", "meilleur prix", 2),
    (r"\bbest\s+(?:price|offer|lead\s*time)", "best price", 2),
    (r"\b(?:ci-joint|ci\s+joint)\s+(?:notre|la|une)\s+(?:demande|liste|consultation)", "ci-joint notre demande", 2),
    (r"\bplease\s+find\s+attached\s+(?:our|the)\s+(?:request|rfq|list|requirement|enquiry|inquiry)", "attached our request", 2),
    (r"\b(?:nous\s+avons\s+besoin|we\s+(?:need|require)|nous\s+recherchons)\b", "we need", 2),
    # weak
    (r"\bdevis\b", "devis", 1),
    (r"\bcotation\b", "cotation", 1),
    (r"\b(?:quantite|qte|qty)\b", "quantity", 1),
    (r"\bliste\s+(?:des\s+)?(?:articles|pieces|equipements)", "item list", 1),
    (r"\burgent\b", "urgent", 1),
    (r"\bdelai\s+(?:de\s+livraison\s+)?(?:et|&)\s+prix|\bprix\s+(?:et|&)\s+delai", "price and lead time", 1),
)

OFFER_RULES = _rules(
    # strong
    (r"\b(?:notre|nos)\s+(?:offre|devis|proposition|cotation)s?\b", "notre offre", 3),
    (r"\bour\s+(?:best\s+)?(?:offer|quotation|quote|proposal)s?\b", "our offer", 3),
    (r"\bpro[\s-]?forma\b", "proforma", 3),
    (r"\boffre\s+(?:de\s+prix|commerciale|tarifaire)", "offre de prix", 3),
    (r"\bproposition\s+commerciale\b", "proposition commerciale", 3),
    (r"\b(?:as\s+per|further\s+to|following)\s+your\s+(?:request|inquiry|enquiry|rfq)", "further to your request", 3),
    (r"\bsuite\s+a\s+votre\s+(?:demande|consultation|appel)", "suite a votre demande", 3),
    (r"\bwe\s+are\s+pleased\s+to\s+(?:quote|offer|submit|send)", "pleased to quote", 3),
    (r"\bnous\s+avons\s+le\s+plaisir\s+de\s+vous\s+(?:faire\s+parvenir|adresser|transmettre|proposer|communiquer)", "avons le plaisir de vous", 3),
    (r"\b(?:unable|not\s+able)\s+to\s+(?:quote|offer)|\bregret\b.{0,40}\b(?:cannot|unable)\b", "supplier decline", 3),
    (r"\bne\s+(?:sommes|pouvons)\s+pas\s+en\s+mesure\s+de\s+(?:coter|vous\s+faire|repondre)", "declinaison fournisseur", 3),
    # medium
    (r"\bprix\s+unitaire\b|\bunit\s+price\b|\bp\.u\.?\s*(?:ht)?\b", "unit price", 2),
    (r"\bvalidite\b|\bvalid\s+(?:until|for|thru)\b|\bvalable\s+(?:jusqu|pendant)|\boffer\s+valid", "validity", 2),
    (r"\bdelai\s+de\s+livraison\s*:|\bdelivery\s+(?:time|lead\s*time)\s*:|\blead\s*time\s*:", "delivery lead time", 2),
    (r"\bconditions\s+de\s+(?:paiement|reglement)|\bpayment\s+terms\b", "payment terms", 2),
    (r"\b(?:please\s+find|veuillez\s+trouver)\s+(?:attached|ci-joint|ci\s+joint)\s+(?:our|notre)\s+(?:offer|quotation|quote|devis|offre)", "attached our quotation", 2),
    (r"\d[\d\s.,]*\s?(?:eur|euros?|usd|mad|dh|dhs|€|\$)(?![a-z])|(?:€|\$|eur|usd)\s?\d", "amount with currency", 2),
    (r"\bincoterms?\b", "incoterms", 2),
    # weak
    (r"\boffre\b|\boffer\b", "offer", 1),
    (r"\bmoq\b|\bminimum\s+order", "MOQ", 1),
    (r"\b(?:total|montant)\b", "total", 1),
    (r"\bremise\b|\bdiscount\b", "discount", 1),
)

# Attachment-filename cues (lower-cased filename, accents folded)
OFFER_FILENAME_RULES = _rules(
    (r"(?:quotation|quote|offer|proforma|pro-forma|invoice|devis|cotation|proposition|offre|facture)", "offer-like attachment name", 3),
)
REQUEST_FILENAME_RULES = _rules(
    (r"(?:rfq|rfp|demande|request|requisition|consultation|enquiry|inquiry)", "request-like attachment name", 2),
)
# A name containing both ("demande_de_devis.pdf") counts for the request side only
OFFER_FILENAME_VETO = r"demande|request|rfq"


# ═══════════════════════════════════════════════════════════════════════
# Hard-rule signals (any scope)
# ═══════════════════════════════════════════════════════════════════════

QUOTE_NUMBER_RULES = _rules(
    (r"\b(?:quotation|quote|devis|offre|offer|proforma|cotation)\s*(?:no\.?|nr\.?|n°|#|number|numero|ref\.?)?\s*[:.]?\s*[a-z]{0,4}[-/]?\d{3,}", "quote number"),
)
VALIDITY_RULES = _rules(
    (r"\bvalidite\b|\bvalidity\b|\bvalid\s+(?:until|for|thru)\b|\bvalable\s+(?:jusqu|pendant)|\boffer\s+valid", "validity"),
)
TOTALS_RULES = _rules(
    (r"\btotal\s+(?:ht|ttc|hors\s+taxes?|net|amount|price|general|h\.t\.)\b", "total HT/TTC"),
    (r"\bmontant\s+(?:ht|ttc|total)\b", "montant total"),
    (r"\bgrand\s+total\b|\bsub-?\s?total\b", "grand total"),
    (r"\btotal\s*:\s*[\d$€]", "total amount"),
)
BANK_RULES = _rules(
    (r"\biban\b|\bswift\b|\bbic\s*:|\brib\b|\bcoordonnees\s+bancaires\b|\bbank\s+details\b|\baccount\s+(?:no|number)\b", "bank details"),
)


# ═══════════════════════════════════════════════════════════════════════
# Reminder / duplicate / auto-reply
# ═══════════════════════════════════════════════════════════════════════

# Our own request numbers: DDP-YYYYMMDD-NNN
INTERNAL_REFERENCE = r"\bddp-\d{8}-\d{3,4}\b"

# Client-side reference numbers that can be looked up in the duplicate index
EXTERNAL_REFERENCE_PATTERNS = (
    r"\bpr[\s_-]?\d{6,10}\b",
    r"\brfq[\s_#:-]*([a-z]{0,3}-?\d{3,})\b",
    r"\b(?:ref|reference|n°\s*demande)\s*[:.#]?\s*([a-z0-9][a-z0-9/_-]{3,})\b",
    r"#\s?(\d{3,})\b",
)

CHASER_RULES = _rules(
    (r"\brelance\b|\brappel\b|\bsans\s+nouvelles?\b|\bje\s+reviens\s+vers\s+vous\b", "relance"),
    (r"\bfollow[\s-]?up\b|\bany\s+update\b|\breminder\b|\bgentle\s+reminder\b|\bstill\s+waiting\b", "follow up"),
)

AUTO_REPLY_SUBJECT_RULES = _rules(
    (r"^(?:automatic\s+reply|auto(?:matic)?[\s-]?reply|autoreply)\b", "automatic reply"),
    (r"\bout\s+of\s+(?:the\s+)?office\b", "out of office"),
    (r"^reponse\s+automatique\b|\babsence\s+du\s+bureau\b|^absent\b|^absence\b", "reponse automatique"),
    (r"^(?:undeliverable|delivery\s+status\s+notification|non\s+remis|mail\s+delivery\s+failed)", "delivery failure"),
)

# Header name → regex on the header value ("" means presence is enough)
AUTO_REPLY_HEADERS = (
    ("Auto-Submitted", r"^(?!no\b)"),
    ("X-Autoreply", ""),
    ("X-Autorespond", ""),
    ("Precedence", r"auto_reply|bulk|junk"),
    ("X-Auto-Response-Suppress", r"\b(?:all|oof|autoreply)\b"),
)


# ═══════════════════════════════════════════════════════════════════════
# Config value
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class KeywordConfig:
    po_rules: tuple = PO_RULES
    po_filename_rules: tuple = PO_FILENAME_RULES
    explicit_subject_rules: tuple = EXPLICIT_SUBJECT_RULES
    explicit_body_rules: tuple = EXPLICIT_BODY_RULES
    request_rules: tuple = REQUEST_RULES
    offer_rules: tuple = OFFER_RULES
    offer_filename_rules: tuple = OFFER_FILENAME_RULES
    request_filename_rules: tuple = REQUEST_FILENAME_RULES
    quote_number_rules: tuple = QUOTE_NUMBER_RULES
    validity_rules: tuple = VALIDITY_RULES
    totals_rules: tuple = TOTALS_RULES
    bank_rules: tuple = BANK_RULES
    chaser_rules: tuple = CHASER_RULES
    auto_reply_subject_rules: tuple = AUTO_REPLY_SUBJECT_RULES
    subject_multiplier: float = SUBJECT_MULTIPLIER
    offer_filename_veto: str = OFFER_FILENAME_VETO
    internal_reference: str = INTERNAL_REFERENCE
    external_reference_patterns: tuple = EXTERNAL_REFERENCE_PATTERNS
    auto_reply_headers: tuple = AUTO_REPLY_HEADERS

    @classmethod
    def from_file(cls, path: str) -> "KeywordConfig":
        """Defaults with the tables found in a JSON file replaced."""
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return cls.default().with_overrides(data)

    @classmethod
    def default(cls) -> "KeywordConfig":
        return cls()

    def with_overrides(self, data: dict) -> "KeywordConfig":
        names = {f.name for f in fields(self)}
        changes = {}
        for key, value in data.items():
            if key not in names:
                log.warning("Unknown keyword table %r ignored", key)
                continue
            if key.endswith("_rules"):
                changes[key] = tuple(Rule.from_dict(r) for r in value)
            elif isinstance(value, list):
                changes[key] = tuple(tuple(v) if isinstance(v, list) else v for v in value)
            else:
                changes[key] = value
        if changes:
            log.info("Keyword overrides applied: %s", sorted(changes))
        return replace(self, **changes)


def load_keywords(path: str = "") -> KeywordConfig:
    """Keyword config from RFQ_KEYWORDS_FILE (if given and readable) or defaults."""
    if not path:
        return KeywordConfig.default()
    try:
        return KeywordConfig.from_file(path)
    except (OSError, json.JSONDecodeError, KeyError, re.error) as e:
        log.error("Keyword file %s unusable, using defaults: %s", path, e)
        return KeywordConfig.default()
