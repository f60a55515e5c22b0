import math
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel

from common.lexicon import LEXICONS, normalize_locale, resolve_lexicon_key
from common.schemas import Amount

PROVISIONAL_MARKER = "~"

_NUMERIC_RE = re.compile(r"^\d+$")
_DECIMAL_RE = re.compile(r"^\d+(?:\.\d+)?$")
_ATTACHED_MEASURE_RE = re.compile(r"^(\d+(?:\.\d+)?)([a-zäöüß]+)$")
_ATTACHED_MULTIPLIER_RE = re.compile(r"^(\d+)\s*x$")
_NAME_EDGE_CHARS = " -,;:/|+"
# larger amounts are read as part of the name
MAX_AMOUNT = 100_000


class ScoringConfig(BaseModel):
    """Heuristic weights for the matchers.

    Only the relative order between matchers matters; the values are tunable.
    """

    base_confidence: float = 0.15
    count_weight: float = 0.35
    per_unit_weight: float = 0.35
    packaging_weight: float = 0.05
    leading_packaging_penalty: float = 0.2
    no_match_confidence: float = 0.15

    multipack: float = 90
    multiplier_without_measure: float = 55
    count_measure_packaging: float = 78
    count_with_packaging: float = 80
    measure_with_packaging: float = 75
    measure_only: float = 60
    count_only: float = 50
    leading_packaging: float = 40


class ParseResult(BaseModel):
    name: str
    confidence: float
    quantity: Optional[Amount] = None
    per_unit: Optional[Amount] = None
    debug: Optional[Dict[str, Any]] = None

    @property
    def has_structure(self) -> bool:
        return self.quantity is not None or self.per_unit is not None


@dataclass
class Match:
    reason: str
    score: float
    confidence: float
    remove_idx: Set[int]
    quantity: Optional[Amount] = None
    per_unit: Optional[Amount] = None


@dataclass
class _Measure:
    val: float
    unit_id: str
    length: int
    first_idx: int = 0


@dataclass
class _LexiconIndex:
    alias_to_unit: Dict[str, Tuple[str, str]] = field(default_factory=dict)
    multipliers: Set[str] = field(default_factory=set)
    connectors: Set[str] = field(default_factory=set)
    scales: Dict[str, int] = field(default_factory=dict)
    number_words: Dict[str, int] = field(default_factory=dict)


def _build_index(lexicon: Dict[str, Any]) -> _LexiconIndex:
    idx = _LexiconIndex(
        multipliers={str(x).lower() for x in lexicon.get("multipliers", [])},
        connectors={str(x).lower() for x in lexicon.get("connectors", [])},
        scales={str(k).lower(): int(v) for k, v in lexicon.get("scales", {}).items()},
        number_words={str(k).lower(): int(v) for k, v in lexicon.get("number_words", {}).items()},
    )
    for unit in lexicon.get("units", []):
        unit_id = str(unit.get("id") or "").strip()
        unit_type = str(unit.get("type") or "").strip()
        if not unit_id or not unit_type:
            continue
        for alias in unit.get("aliases", []):
            key = str(alias or "").strip().lower()
            if key:
                idx.alias_to_unit[key] = (unit_id, unit_type)
    return idx


def normalize_raw(raw: Any) -> str:
    s = unicodedata.normalize("NFKC", str(raw if raw is not None else "")).strip()
    s = s.replace("×", "x")
    s = re.sub(r"[–—]", "-", s)
    s = re.sub(r"(\d),(\d)", r"\1.\2", s)
    return re.sub(r"\s+", " ", s).strip()


def upper_first(s: str) -> str:
    if not s:
        return ""
    return s[:1].upper() + s[1:]


def _letters(token: str) -> str:
    return "".join(ch for ch in token if ch.isalpha())


def _plausible_amount(text: str) -> Optional[float]:
    """Positive finite number up to MAX_AMOUNT, else None."""
    if len(text) > 12:
        return None
    n = float(text)
    if not math.isfinite(n) or n <= 0 or n > MAX_AMOUNT:
        return None
    return n


def _is_measure_unit(unit: Optional[Tuple[str, str]]) -> bool:
    return unit is not None and unit[1] in ("mass", "volume")


def _is_count_unit(unit: Optional[Tuple[str, str]]) -> bool:
    return unit is not None and unit[1] == "count"


class ShoppingItemParser:
    """Parses free-text list entries like `6x Lilith Ghee 500g` into name, quantity and perUnit."""

    def __init__(
        self,
        locale: str = "en",
        keep_debug: bool = False,
        lexicon: Optional[Dict[str, Any]] = None,
        scoring: Optional[ScoringConfig] = None,
    ):
        self.keep_debug = keep_debug
        self.locale = normalize_locale(locale)
        self.lexicon_key = resolve_lexicon_key(self.locale)
        self.lexicon = lexicon if isinstance(lexicon, dict) else LEXICONS[self.lexicon_key]
        fallback_key = resolve_lexicon_key(self.lexicon.get("fallback_locale", "en"))
        self.fallback_lexicon = LEXICONS[fallback_key]
        self.scoring = scoring or ScoringConfig()
        self._idx = _build_index(self.lexicon)
        self._fallback_idx = _build_index(self.fallback_lexicon)

    @property
    def matchers(self) -> List[Callable[[List[str]], Optional[Match]]]:
        # Priority order: on equal scores the earlier matcher wins.
        return [
            self._try_multipack,
            self._try_count_measure_packaging,
            self._try_count_with_packaging,
            self._try_measure_with_packaging,
            self._try_measure_only,
            self._try_count_only,
            self._try_leading_packaging_without_count,
        ]

    def parse(self, raw: Any) -> ParseResult:
        normalized = normalize_raw(raw)
        if normalized.startswith(PROVISIONAL_MARKER):
            normalized = normalized[len(PROVISIONAL_MARKER):].strip()
        if not normalized:
            return ParseResult(name="", confidence=0.0)

        orig_tokens = normalized.split(" ")
        lower_tokens = [self._normalize_token(t) for t in orig_tokens]

        best: Optional[Match] = None
        for matcher in self.matchers:
            m = matcher(lower_tokens)
            if m is None:
                continue
            if best is None or m.score > best.score:
                best = m

        if best is None:
            best = Match(
                reason="no match",
                score=0.0,
                confidence=self.scoring.no_match_confidence,
                remove_idx=set(),
            )
        return self._build_result(raw, normalized, orig_tokens, best)

    def _build_result(self, raw: Any, normalized: str, orig_tokens: List[str], match: Match) -> ParseResult:
        keep = [t for i, t in enumerate(orig_tokens) if i not in match.remove_idx]
        name = re.sub(r"\s+", " ", " ".join(keep)).strip(_NAME_EDGE_CHARS)
        result = ParseResult(
            name=upper_first(name),
            confidence=self._clamp01(match.confidence),
            quantity=match.quantity,
            per_unit=match.per_unit,
        )
        if self.keep_debug:
            result.debug = {
                "raw": "" if raw is None else str(raw),
                "normalized": normalized,
                "locale": self.locale,
                "lexicon": self.lexicon_key,
                "reason": match.reason,
                "remove_idx": sorted(match.remove_idx),
            }
        return result

    # --- matchers ---

    def _try_multipack(self, tokens: List[str]) -> Optional[Match]:
        """`6x ... 500g` -> 6 pcs of 500 g; `5x name` -> 5 pcs."""
        for i, token in enumerate(tokens):
            remove_idx: Set[int] = set()
            attached = self._parse_count_with_attached_multiplier(token)
            if attached is not None:
                count = attached
                multiplier_at = i
                remove_idx.add(i)
            else:
                count = self._parse_count_token(token)
                if count is None or i + 1 >= len(tokens) or not self._is_multiplier(tokens[i + 1]):
                    continue
                multiplier_at = i + 1
                remove_idx.update((i, i + 1))

            search_from = multiplier_at + 1
            measure = self._find_first_measure(tokens, search_from)
            if measure is None:
                packaging = self._find_first_packaging(tokens, search_from, search_from + 2)
                unit_id = "pcs"
                if packaging is not None:
                    unit_id, pkg_idx = packaging
                    remove_idx.add(pkg_idx)
                confidence = self._score(has_count=True, has_per_unit=False, has_packaging=unit_id != "pcs")
                return Match(
                    reason="multiplier-without-measure",
                    score=self.scoring.multiplier_without_measure + confidence,
                    confidence=confidence,
                    remove_idx=remove_idx,
                    quantity=Amount(val=int(count), unit=unit_id),
                )

            remove_idx.update(range(measure.first_idx, measure.first_idx + measure.length))
            packaging = self._find_first_packaging(tokens, search_from, measure.first_idx)
            unit_id = "pcs"
            if packaging is not None:
                unit_id, pkg_idx = packaging
                remove_idx.add(pkg_idx)
            confidence = self._score(has_count=True, has_per_unit=True, has_packaging=packaging is not None)
            return Match(
                reason="multipack",
                score=self.scoring.multipack + confidence,
                confidence=confidence,
                remove_idx=remove_idx,
                quantity=Amount(val=int(count), unit=unit_id),
                per_unit=Amount(val=measure.val, unit=measure.unit_id),
            )
        return None

    def _try_count_measure_packaging(self, tokens: List[str]) -> Optional[Match]:
        """`fünf ein liter Becher eis` -> 5 cup of 1 l."""
        for i in range(len(tokens) - 2):
            num = self._parse_number_span(tokens, i, allow_decimal=False, max_len=5)
            if num is None:
                continue
            count, num_len = num
            measure = self._parse_measure_at(tokens, i + num_len)
            if measure is None:
                continue
            pkg_at = i + num_len + measure.length
            pkg = self._parse_unit_token(tokens[pkg_at]) if pkg_at < len(tokens) else None
            if not _is_count_unit(pkg):
                continue
            confidence = self._score(has_count=True, has_per_unit=True, has_packaging=True)
            return Match(
                reason="count+measure+packaging",
                score=self.scoring.count_measure_packaging + confidence,
                confidence=confidence,
                remove_idx=set(range(i, pkg_at + 1)),
                quantity=Amount(val=int(count), unit=pkg[0]),
                per_unit=Amount(val=measure.val, unit=measure.unit_id),
            )
        return None

    def _try_count_with_packaging(self, tokens: List[str]) -> Optional[Match]:
        """`5 dosen cola` -> 5 can; `2 bags of rice 1kg` -> 2 bag of 1 kg."""
        for i in range(len(tokens) - 1):
            num = self._parse_number_span(tokens, i, allow_decimal=False, max_len=5)
            if num is None:
                continue
            count, num_len = num
            pkg_at = i + num_len
            if pkg_at >= len(tokens):
                continue
            pkg = self._parse_unit_token(tokens[pkg_at])
            if not _is_count_unit(pkg):
                continue

            remove_idx = set(range(i, pkg_at + 1))
            connector_at = pkg_at + 1
            if connector_at < len(tokens) - 1 and self._is_connector(tokens[connector_at]):
                remove_idx.add(connector_at)
            measure = self._find_first_measure(tokens, pkg_at + 1)
            per_unit = None
            if measure is not None:
                remove_idx.update(range(measure.first_idx, measure.first_idx + measure.length))
                per_unit = Amount(val=measure.val, unit=measure.unit_id)
            confidence = self._score(has_count=True, has_per_unit=per_unit is not None, has_packaging=True)
            return Match(
                reason="count+packaging",
                score=self.scoring.count_with_packaging + confidence,
                confidence=confidence,
                remove_idx=remove_idx,
                quantity=Amount(val=int(count), unit=pkg[0]),
                per_unit=per_unit,
            )
        return None

    def _try_measure_with_packaging(self, tokens: List[str]) -> Optional[Match]:
        """`500g Packung Nudeln` -> 1 pack of 500 g."""
        for i in range(len(tokens)):
            measure = self._parse_measure_at(tokens, i)
            if measure is None:
                continue
            pkg_at = i + measure.length
            pkg = self._parse_unit_token(tokens[pkg_at]) if pkg_at < len(tokens) else None
            if not _is_count_unit(pkg):
                continue
            confidence = self._score(has_count=True, has_per_unit=True, has_packaging=True)
            return Match(
                reason="measure+packaging",
                score=self.scoring.measure_with_packaging + confidence,
                confidence=confidence,
                remove_idx=set(range(i, pkg_at + 1)),
                quantity=Amount(val=1, unit=pkg[0]),
                per_unit=Amount(val=measure.val, unit=measure.unit_id),
            )
        return None

    def _try_measure_only(self, tokens: List[str]) -> Optional[Match]:
        """`Sonett 1,5l Color Waschmittel` -> 1 pcs of 1.5 l."""
        measure = self._find_first_measure(tokens, 0)
        if measure is None:
            return None
        confidence = self._score(has_count=True, has_per_unit=True, has_packaging=False)
        return Match(
            reason="measure-only",
            score=self.scoring.measure_only + confidence,
            confidence=confidence,
            remove_idx=set(range(measure.first_idx, measure.first_idx + measure.length)),
            quantity=Amount(val=1, unit="pcs"),
            per_unit=Amount(val=measure.val, unit=measure.unit_id),
        )

    def _try_count_only(self, tokens: List[str]) -> Optional[Match]:
        """`sechs butter` -> 6 pcs."""
        for i in range(len(tokens)):
            num = self._parse_number_span(tokens, i, allow_decimal=False, max_len=5)
            if num is None:
                continue
            count, num_len = num
            next_at = i + num_len
            next_unit = self._parse_unit_token(tokens[next_at]) if next_at < len(tokens) else None
            # "500 g" is a measure, not a count
            if _is_measure_unit(next_unit):
                continue

            remove_idx = set(range(i, next_at))
            unit_id = "pcs"
            if _is_count_unit(next_unit):
                unit_id = next_unit[0]
                remove_idx.add(next_at)
            confidence = self._score(has_count=True, has_per_unit=False, has_packaging=unit_id != "pcs")
            return Match(
                reason="count-only",
                score=self.scoring.count_only + confidence,
                confidence=confidence,
                remove_idx=remove_idx,
                quantity=Amount(val=int(count), unit=unit_id),
            )
        return None

    def _try_leading_packaging_without_count(self, tokens: List[str]) -> Optional[Match]:
        """`dose kichererbsen` -> 1 can."""
        if not tokens or self._parse_count_token(tokens[0]) is not None:
            return None
        unit = self._parse_unit_token(tokens[0])
        if not _is_count_unit(unit):
            return None
        second = tokens[1] if len(tokens) > 1 else None
        if second is not None and self._parse_count_token(second) is not None:
            return None

        remove_idx = {0}
        if second is not None and self._is_connector(second):
            remove_idx.add(1)
        confidence = self._clamp01(
            self._score(has_count=True, has_per_unit=False, has_packaging=True)
            - self.scoring.leading_packaging_penalty
        )
        return Match(
            reason="leading-packaging-without-count",
            score=self.scoring.leading_packaging + confidence,
            confidence=confidence,
            remove_idx=remove_idx,
            quantity=Amount(val=1, unit=unit[0]),
        )

    # --- token helpers ---

    def _find_first_measure(self, tokens: List[str], start: int) -> Optional[_Measure]:
        for i in range(start, len(tokens)):
            measure = self._parse_measure_at(tokens, i)
            if measure is not None:
                measure.first_idx = i
                return measure
        return None

    def _find_first_packaging(self, tokens: List[str], start: int, until: int) -> Optional[Tuple[str, int]]:
        for i in range(start, min(until, len(tokens))):
            unit = self._parse_unit_token(tokens[i])
            if _is_count_unit(unit):
                return unit[0], i
        return None

    def _parse_measure_at(self, tokens: List[str], i: int) -> Optional[_Measure]:
        """Attached (`500g`, `1.5l`) or separated (`500 g`, `zwei hundert gramm`) measurement."""
        if i >= len(tokens) or not tokens[i]:
            return None

        m = _ATTACHED_MEASURE_RE.match(tokens[i])
        if m:
            val = _plausible_amount(m.group(1))
            unit = self._parse_unit_token(m.group(2))
            if val is not None and _is_measure_unit(unit):
                return _Measure(val=val, unit_id=unit[0], length=1)

        num = self._parse_number_span(tokens, i, allow_decimal=True, max_len=5)
        if num is None:
            return None
        val, num_len = num
        unit_at = i + num_len
        unit = self._parse_unit_token(tokens[unit_at]) if unit_at < len(tokens) else None
        if not _is_measure_unit(unit):
            return None
        length = num_len + 1
        # "2 l of milk"
        if unit_at + 1 < len(tokens) and self._is_connector(tokens[unit_at + 1]):
            length += 1
        return _Measure(val=val, unit_id=unit[0], length=length)

    def _parse_number_span(
        self, tokens: List[str], start: int, allow_decimal: bool = False, max_len: int = 4
    ) -> Optional[Tuple[float, int]]:
        """Digits or number words, optionally combined with scale words (`zwei hundert`)."""
        if start >= len(tokens) or not tokens[start]:
            return None

        first = tokens[start].strip().lower()
        numeric_re = _DECIMAL_RE if allow_decimal else _NUMERIC_RE
        if numeric_re.match(first):
            n = _plausible_amount(first)
            return (n, 1) if n is not None else None

        total = 0
        current = 0
        consumed = 0
        saw_scale = False
        for i in range(start, min(len(tokens), start + max(1, max_len))):
            raw = tokens[i].strip().lower()
            # digits terminate a spelled-out number
            if not raw or _DECIMAL_RE.match(raw):
                break
            word = _letters(raw)
            if not word:
                break

            number = self._lookup_number_word(word)
            if number:
                current += number
                consumed += 1
                if not saw_scale:
                    # Only keep summing when a scale word follows ("fünf ein liter" is 5, then 1).
                    next_word = _letters(tokens[i + 1].strip().lower()) if i + 1 < len(tokens) else ""
                    next_scale = self._lookup_scale(next_word) if next_word else None
                    if not next_scale or next_scale <= 1:
                        break
                continue

            scale = self._lookup_scale(word)
            if scale and scale > 1:
                current = (current or 1) * scale
                total += current
                current = 0
                consumed += 1
                saw_scale = True
                continue
            break

        val = total + current
        if consumed == 0 or val <= 0 or val > MAX_AMOUNT:
            return None
        return float(val), consumed

    def _parse_count_with_attached_multiplier(self, token: str) -> Optional[int]:
        m = _ATTACHED_MULTIPLIER_RE.match(token.strip().lower())
        if not m:
            return None
        val = _plausible_amount(m.group(1))
        return int(val) if val is not None else None

    def _parse_count_token(self, token: str) -> Optional[int]:
        t = token.strip().lower()
        if _NUMERIC_RE.match(t):
            n = _plausible_amount(t)
            return int(n) if n is not None else None
        number = self._lookup_number_word(_letters(t))
        return number if number else None

    def _parse_unit_token(self, token: str) -> Optional[Tuple[str, str]]:
        t = token.strip().lower().lstrip("([<{").rstrip(")]}>.,;:!?")
        return self._idx.alias_to_unit.get(t) or self._fallback_idx.alias_to_unit.get(t)

    def _lookup_number_word(self, word: str) -> Optional[int]:
        if not word:
            return None
        number = self._idx.number_words.get(word)
        if number is None:
            number = self._fallback_idx.number_words.get(word)
        return number if number and number > 0 else None

    def _lookup_scale(self, word: str) -> Optional[int]:
        scale = self._idx.scales.get(word)
        if scale is None:
            scale = self._fallback_idx.scales.get(word)
        return scale

    def _is_multiplier(self, token: str) -> bool:
        t = token.strip().lower()
        return t in self._idx.multipliers or t in self._fallback_idx.multipliers

    def _is_connector(self, token: str) -> bool:
        t = token.strip().lower()
        return t in self._idx.connectors or t in self._fallback_idx.connectors

    @staticmethod
    def _normalize_token(token: str) -> str:
        t = token.strip().lower()
        t = re.sub(r"[“”„\"]", "", t)
        return re.sub(r"[’']", "'", t)

    def _score(self, has_count: bool, has_per_unit: bool, has_packaging: bool) -> float:
        c = self.scoring.base_confidence
        if has_count:
            c += self.scoring.count_weight
        if has_per_unit:
            c += self.scoring.per_unit_weight
        if has_packaging:
            c += self.scoring.packaging_weight
        return self._clamp01(c)

    @staticmethod
    def _clamp01(x: float) -> float:
        return max(0.0, min(1.0, float(x or 0)))


_parser_cache: Dict[str, ShoppingItemParser] = {}


def get_parser(locale: str) -> ShoppingItemParser:
    key = normalize_locale(locale)
    parser = _parser_cache.get(key)
    if parser is None:
        parser = ShoppingItemParser(locale=key)
        _parser_cache[key] = parser
    return parser
