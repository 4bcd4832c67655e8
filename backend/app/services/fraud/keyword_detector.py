"""
Red-Flag Keyword Detector

Scans customer feedback for admin-maintained red-flag keywords.

Scoring:
- Each active keyword of the language is matched case-insensitively
  using its detection_pattern (regex)
- A keyword counts once no matter how often it occurs
- Severities are summed, capped (default 10) and divided by the cap
- Category is informational only; severity is the sole weight

The result is a RISK score (1.0 = worst). Callers invert it before
handing it to the fraud scorer.
"""
import logging
import re
from typing import Dict, Iterable, List, Optional, Any
from uuid import uuid4

from sqlalchemy.exc import IntegrityError

from ...models.db_models import RedFlagKeywordDB, KeywordCategory, utcnow
from ...models.verification import KeywordMatch, KeywordScanResult
from ..errors import ValidationError, DuplicateError, RecordNotFoundError

logger = logging.getLogger(__name__)


DEFAULT_SEVERITY_CAP = 10
DEFAULT_LANGUAGE = "sv"


# =============================================================================
# BUILT-IN KEYWORD SET
# =============================================================================

DEFAULT_KEYWORDS = [
    # Nonsensical
    {"keyword": "flygande elefanter", "category": KeywordCategory.NONSENSICAL, "severity_level": 8, "language_code": "sv",
     "detection_pattern": r"\b(flygande\s+elefanter|flying\s+elephants)\b"},
    {"keyword": "teleportering", "category": KeywordCategory.NONSENSICAL, "severity_level": 7, "language_code": "sv",
     "detection_pattern": r"\bteleporter(ing|ade)\b"},
    {"keyword": "tidsresor", "category": KeywordCategory.NONSENSICAL, "severity_level": 9, "language_code": "sv",
     "detection_pattern": r"\btidsres(a|or|ade|an)\b"},
    {"keyword": "magiska krafter", "category": KeywordCategory.NONSENSICAL, "severity_level": 6, "language_code": "sv",
     "detection_pattern": r"\bmagiska?\s+krafter\b"},
    {"keyword": "levitating", "category": KeywordCategory.NONSENSICAL, "severity_level": 7, "language_code": "en",
     "detection_pattern": r"\blevitat(ing|ed)\b"},

    # Threats
    {"keyword": "bomb", "category": KeywordCategory.THREATS, "severity_level": 10, "language_code": "sv",
     "detection_pattern": r"\bbomb(er|en|ade)?\b"},
    {"keyword": "hot", "category": KeywordCategory.THREATS, "severity_level": 8, "language_code": "sv",
     "detection_pattern": r"\bhot(ar|ade|else)?\b"},
    {"keyword": "våld", "category": KeywordCategory.THREATS, "severity_level": 9, "language_code": "sv",
     "detection_pattern": r"\bvåld(sam|samma|t)?\b"},
    {"keyword": "skada", "category": KeywordCategory.THREATS, "severity_level": 7, "language_code": "sv",
     "detection_pattern": r"\bskada(r|de|des)?\b"},
    {"keyword": "döda", "category": KeywordCategory.THREATS, "severity_level": 10, "language_code": "sv",
     "detection_pattern": r"\bdöd(a|ar|ade)\b"},

    # Profanity
    {"keyword": "helvete", "category": KeywordCategory.PROFANITY, "severity_level": 5, "language_code": "sv",
     "detection_pattern": r"\bhelvet(e|es)\b"},
    {"keyword": "fan", "category": KeywordCategory.PROFANITY, "severity_level": 4, "language_code": "sv",
     "detection_pattern": r"\bfan(en)?\b"},
    {"keyword": "skit", "category": KeywordCategory.PROFANITY, "severity_level": 3, "language_code": "sv",
     "detection_pattern": r"\bskit(en|ig|igt)?\b"},

    # Impossible claims
    {"keyword": "gratis allt", "category": KeywordCategory.IMPOSSIBLE, "severity_level": 8, "language_code": "sv",
     "detection_pattern": r"\bgratis\s+allt\b"},
    {"keyword": "miljoner kronor", "category": KeywordCategory.IMPOSSIBLE, "severity_level": 9, "language_code": "sv",
     "detection_pattern": r"\bmiljoner?\s+kronor\b"},
    {"keyword": "omedelbar betalning", "category": KeywordCategory.IMPOSSIBLE, "severity_level": 7, "language_code": "sv",
     "detection_pattern": r"\bomedelbar(t)?\s+betalnin(g|gar)\b"},
]


def default_pattern(keyword: str) -> str:
    """Word-bounded, escaped pattern used when no detection_pattern is given."""
    return rf"\b{re.escape(keyword.strip())}\b"


# =============================================================================
# DETECTOR
# =============================================================================

class KeywordDetector:
    """
    Matches feedback text against a fixed snapshot of active keywords.

    Keyword rows are read once at construction; the detector never
    writes. Build a new detector to pick up admin changes.
    """

    def __init__(
        self,
        keywords: Iterable[Any],
        severity_cap: int = DEFAULT_SEVERITY_CAP,
        default_language: str = DEFAULT_LANGUAGE,
    ):
        if severity_cap <= 0:
            raise ValidationError("severity_cap must be positive")

        self.severity_cap = severity_cap
        self.default_language = default_language
        self._by_language: Dict[str, List[Dict[str, Any]]] = {}

        for row in keywords:
            if not row.is_active:
                continue
            pattern = row.detection_pattern or default_pattern(row.keyword)
            try:
                compiled = re.compile(pattern, re.IGNORECASE)
            except re.error as e:
                logger.warning(f"Skipping keyword '{row.keyword}': invalid pattern ({e})")
                continue

            category = row.category.value if isinstance(row.category, KeywordCategory) else str(row.category)
            self._by_language.setdefault(row.language_code, []).append({
                "id": row.id,
                "keyword": row.keyword,
                "category": category,
                "severity": int(row.severity_level),
                "regex": compiled,
            })

    @classmethod
    def from_session(cls, db, severity_cap: int = DEFAULT_SEVERITY_CAP, default_language: str = DEFAULT_LANGUAGE):
        """Build a detector over the active keywords stored in the database."""
        rows = db.query(RedFlagKeywordDB).filter(RedFlagKeywordDB.is_active.is_(True)).all()
        return cls(rows, severity_cap=severity_cap, default_language=default_language)

    @property
    def languages(self) -> List[str]:
        return sorted(self._by_language.keys())

    def scan(self, text: Optional[str], language_code: Optional[str] = None) -> KeywordScanResult:
        """
        Scan text for red-flag keywords.

        Unknown languages fall back to the default language's keyword
        set and the fallback is recorded on the result.
        """
        requested = (language_code or self.default_language).lower()
        language_used = requested
        fallback_applied = False

        if requested not in self._by_language:
            if requested != self.default_language:
                logger.warning(
                    f"No keywords for language '{requested}', falling back to '{self.default_language}'"
                )
                fallback_applied = True
            language_used = self.default_language

        if not text:
            return KeywordScanResult(language_used=language_used, fallback_applied=fallback_applied)

        matches: List[KeywordMatch] = []
        seen = set()
        for entry in self._by_language.get(language_used, []):
            if entry["id"] in seen:
                continue
            if entry["regex"].search(text):
                seen.add(entry["id"])
                matches.append(KeywordMatch(
                    keyword_id=entry["id"],
                    keyword=entry["keyword"],
                    category=entry["category"],
                    severity=entry["severity"],
                ))

        total = min(sum(m.severity for m in matches), self.severity_cap)
        return KeywordScanResult(
            matches=matches,
            total_severity=total,
            score=round(total / self.severity_cap, 4),
            language_used=language_used,
            fallback_applied=fallback_applied,
        )


# =============================================================================
# KEYWORD ADMINISTRATION
# =============================================================================

class KeywordService:
    """Create, update and deactivate red-flag keywords."""

    def __init__(self, db):
        self.db = db

    @staticmethod
    def _validate(severity_level: int, category: Any, detection_pattern: Optional[str]) -> KeywordCategory:
        if isinstance(severity_level, bool) or not isinstance(severity_level, int) or not 1 <= severity_level <= 10:
            raise ValidationError("Severity level must be between 1 and 10")

        try:
            category = KeywordCategory(category)
        except ValueError:
            valid = ", ".join(c.value for c in KeywordCategory)
            raise ValidationError(f"Invalid category. Must be one of: {valid}")

        if detection_pattern:
            try:
                re.compile(detection_pattern)
            except re.error:
                raise ValidationError("Invalid regex pattern")

        return category

    def _exists(self, keyword: str, language_code: str, exclude_id: Optional[str] = None) -> bool:
        query = self.db.query(RedFlagKeywordDB).filter(
            RedFlagKeywordDB.keyword == keyword,
            RedFlagKeywordDB.language_code == language_code,
        )
        if exclude_id:
            query = query.filter(RedFlagKeywordDB.id != exclude_id)
        return query.first() is not None

    def create(
        self,
        keyword: str,
        category: Any,
        severity_level: int,
        language_code: str = DEFAULT_LANGUAGE,
        detection_pattern: Optional[str] = None,
        created_by: str = "system",
    ) -> RedFlagKeywordDB:
        keyword = (keyword or "").strip()
        if not keyword:
            raise ValidationError("Keyword cannot be empty")
        category = self._validate(severity_level, category, detection_pattern)
        language_code = (language_code or DEFAULT_LANGUAGE).lower()

        if self._exists(keyword, language_code):
            raise DuplicateError(f"Keyword '{keyword}' already exists for language '{language_code}'")

        row = RedFlagKeywordDB(
            id=str(uuid4()),
            keyword=keyword,
            category=category,
            severity_level=severity_level,
            language_code=language_code,
            detection_pattern=detection_pattern or default_pattern(keyword),
            created_by=created_by,
            is_active=True,
        )
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateError(f"Keyword '{keyword}' already exists for language '{language_code}'")

        self.db.refresh(row)
        logger.info(f"Created red-flag keyword '{keyword}' ({language_code}, severity {severity_level})")
        return row

    def get(self, keyword_id: str) -> RedFlagKeywordDB:
        row = self.db.query(RedFlagKeywordDB).filter(RedFlagKeywordDB.id == keyword_id).first()
        if not row:
            raise RecordNotFoundError("Keyword", keyword_id)
        return row

    def update(self, keyword_id: str, **changes) -> RedFlagKeywordDB:
        row = self.get(keyword_id)

        severity = changes.get("severity_level", row.severity_level)
        category = changes.get("category", row.category)
        pattern = changes.get("detection_pattern")
        row.category = self._validate(severity, category, pattern)
        row.severity_level = severity

        if "keyword" in changes:
            keyword = (changes["keyword"] or "").strip()
            if not keyword:
                raise ValidationError("Keyword cannot be empty")
            if self._exists(keyword, row.language_code, exclude_id=row.id):
                raise DuplicateError(f"Keyword '{keyword}' already exists for language '{row.language_code}'")
            row.keyword = keyword
            if not pattern:
                row.detection_pattern = default_pattern(keyword)
        if pattern:
            row.detection_pattern = pattern
        if "is_active" in changes:
            row.is_active = bool(changes["is_active"])

        row.updated_at = utcnow()
        self.db.commit()
        self.db.refresh(row)
        return row

    def deactivate(self, keyword_id: str) -> RedFlagKeywordDB:
        row = self.get(keyword_id)
        row.is_active = False
        row.updated_at = utcnow()
        self.db.commit()
        logger.info(f"Deactivated red-flag keyword '{row.keyword}'")
        return row

    def list_keywords(
        self,
        language_code: Optional[str] = None,
        category: Optional[str] = None,
        active_only: bool = True,
    ) -> List[RedFlagKeywordDB]:
        query = self.db.query(RedFlagKeywordDB)
        if active_only:
            query = query.filter(RedFlagKeywordDB.is_active.is_(True))
        if language_code:
            query = query.filter(RedFlagKeywordDB.language_code == language_code.lower())
        if category:
            query = query.filter(RedFlagKeywordDB.category == KeywordCategory(category))
        return query.order_by(RedFlagKeywordDB.severity_level.desc(), RedFlagKeywordDB.keyword).all()

    def seed_default_keywords(self) -> int:
        """Insert the built-in keyword set, skipping ones that already exist."""
        created = 0
        for entry in DEFAULT_KEYWORDS:
            try:
                self.create(created_by="system", **entry)
                created += 1
            except DuplicateError:
                continue
        logger.info(f"Seeded {created} default red-flag keywords")
        return created
