from __future__ import annotations

import re
import unicodedata

STOPWORDS = frozenset(
    "a o as os de da do das dos e ou que com para por na no nas nos em um uma ser se como "
    "mais menos ao aos voce voces eu ele ela eles elas".split()
)

GENERIC_TOKENS = frozenset({"coisa", "pessoa", "cara", "negocio", "isso", "aquilo", "tema", "assunto"})

_NUMERIC_TOKEN = re.compile(r"\d+(?:[.,]\d+)?%?")
_ELLIPSIS = re.compile(r"(?:\.{3,}|…)")
_TRAILING_ELLIPSIS_WORD = re.compile(r"\s+\S*(?:\.{3,}|…)\s*$")
_TRAILING_ELLIPSIS = re.compile(r"(?:\.{3,}|…)\s*$")
_SEGMENT_KEYWORDS = re.compile(r"(erro|resultado|estrategia|passo|metodo|segredo|importante)", re.IGNORECASE)


def clean_token(token: str) -> str:
    decomposed = unicodedata.normalize("NFD", token.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]", "", stripped)


def is_generic_token(raw: str) -> bool:
    token = clean_token(raw)
    return len(token) < 4 or token in STOPWORDS or token in GENERIC_TOKENS


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def round_score(value: float) -> float:
    return round(clamp(value, 0.0, 10.0), 2)


def meets_threshold(score: float | None, threshold: float, tolerance: float = 0.05) -> bool:
    if score is None:
        return False
    return score + tolerance >= threshold


def ms_to_timestamp(ms: int) -> str:
    ms = max(0, int(ms))
    hours, rest = divmod(ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    seconds, millis = divmod(rest, 1_000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


def timestamp_to_ms(value: str) -> int | None:
    match = re.fullmatch(r"\s*(\d{1,2}):(\d{2}):(\d{2})(?:[.,](\d{1,3}))?\s*", value or "")
    if not match:
        return None
    hours, minutes, seconds = (int(part) for part in match.groups()[:3])
    millis = int((match.group(4) or "0").ljust(3, "0"))
    if minutes > 59 or seconds > 59:
        return None
    return ((hours * 60 + minutes) * 60 + seconds) * 1000 + millis


def strip_em_dash(text: str) -> str:
    return re.sub(r"\s*[—–]\s*", ", ", text)


def strip_ellipsis(text: str) -> str:
    return re.sub(r"\s{2,}", " ", _ELLIPSIS.sub(" ", text)).strip()


def has_ellipsis_artifact(text: str) -> bool:
    return bool(_ELLIPSIS.search(text))


def strip_trailing_truncation(text: str) -> str:
    current = text.strip()
    if _ELLIPSIS.search(current):
        current = _TRAILING_ELLIPSIS_WORD.sub("", current).strip()
        current = _TRAILING_ELLIPSIS.sub("", current).strip()
    return current


def truncate(text: str, max_chars: int) -> str:
    """Cut ``text`` to ``max_chars`` preferring a sentence or word boundary."""
    if len(text) <= max_chars:
        return text
    clipped = text[:max_chars].rstrip()
    sentence_break = max(clipped.rfind(". "), clipped.rfind("! "), clipped.rfind("? "), clipped.rfind("\n"))
    if sentence_break >= int(max_chars * 0.6):
        return clipped[: sentence_break + 1].strip()
    last_space = clipped.rfind(" ")
    if last_space >= int(max_chars * 0.8):
        return clipped[:last_space].strip()
    return clipped


def normalize_text(text: str, max_chars: int, min_chars: int = 0, fallback: str = "") -> str:
    cleaned = strip_ellipsis(strip_em_dash(text or ""))
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()
    cleaned = strip_trailing_truncation(cleaned)
    if len(cleaned) < min_chars:
        return truncate(strip_trailing_truncation(strip_ellipsis(strip_em_dash(fallback))), max_chars)
    return truncate(cleaned, max_chars)


def numeric_tokens(text: str) -> list[str]:
    return [token.replace(",", ".").strip() for token in _NUMERIC_TOKEN.findall(text or "")]


def lexical_tokens(text: str) -> set[str]:
    tokens = (clean_token(raw) for raw in (text or "").split())
    return {token for token in tokens if len(token) >= 4 and token not in STOPWORDS}


def lexical_overlap(candidate: str, source: str) -> float:
    candidate_set = lexical_tokens(candidate)
    source_set = lexical_tokens(source)
    if not candidate_set or not source_set:
        return 0.0
    return len(candidate_set & source_set) / len(candidate_set)


def count_ungrounded_numbers(candidate: str, source_numbers: set[str] | frozenset[str]) -> int:
    tokens = numeric_tokens(candidate)
    if not source_numbers:
        return len(tokens)
    return sum(1 for token in tokens if token not in source_numbers)


def segment_score(text: str, tokens_est: int) -> float:
    length_score = min(4.0, tokens_est / 6)
    hook_bonus = 2.0 if re.search(r"[?!]", text) else 0.0
    number_bonus = 1.5 if re.search(r"\d", text) else 0.0
    keyword_bonus = 2.0 if _SEGMENT_KEYWORDS.search(text) else 0.0
    return round(length_score + hook_bonus + number_bonus + keyword_bonus, 2)


def canonical_text(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", (text or "").lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", re.sub(r"[^a-z0-9\s]", " ", stripped)).strip()


def repeated_ratio(values: list[str]) -> float:
    canon = [item for item in (canonical_text(value) for value in values) if len(item) >= 12]
    if len(canon) <= 1:
        return 0.0
    return 1 - len(set(canon)) / len(canon)


def unique_ratio(values: list[str]) -> float:
    if not values:
        return 1.0
    canon = {clean_token(value) for value in values}
    canon.discard("")
    return len(canon) / len(values)


def avg_length(values: list[str]) -> float:
    if not values:
        return 0.0
    return sum(len(value) for value in values) / len(values)


INTRO_PATTERN = re.compile(
    r"\b(nesse video|neste video|no video de hoje|hoje eu vou|hoje vou|se eu tivesse um conselho|"
    r"antes de mais nada|fala galera|bom dia|boa noite|deixa eu te contar)\b",
    re.IGNORECASE,
)
OUTRO_PATTERN = re.compile(
    r"\b(se inscreva|deixa o like|curte ai|ate o proximo|obrigado por assistir|valeu pessoal)\b", re.IGNORECASE
)
STRONG_HOOK_PATTERN = re.compile(
    r"\b(erro|ninguem te conta|evite|nao faca|regra|framework|metodo|passo|faturamento|venda|cliente|"
    r"lucro|escala|crescer|trava)\b",
    re.IGNORECASE,
)
ACTION_SIGNAL_PATTERN = re.compile(
    r"\b(aplique|aplicar|teste|testar|mapeie|mapear|ajuste|ajustar|defina|definir|valide|validar|priorize|"
    r"priorizar|pare|evite|execute|executar|compare|medir|acompanhe)\b",
    re.IGNORECASE,
)
PAIN_SIGNAL_PATTERN = re.compile(
    r"\b(erro|trava|travando|perde|perder|custo|quebra|fracassa|fracasso|nao vende|não vende|nao fecha|"
    r"não fecha|desperdica|gargalo|risco)\b",
    re.IGNORECASE,
)
_ALERT_OPENING = re.compile(r"\b(erro|cuidado|pare|nunca|evite|segredo|ninguem te conta)\b", re.IGNORECASE)
_LEADING_FILLER = re.compile(
    r"^(ent[aã]o|tipo|assim|cara|galera|beleza|bom|olha|veja|vamos la|vamos lá|se eu tivesse um conselho[,.:]?)\s*",
    re.IGNORECASE,
)


def word_count(text: str) -> int:
    return len((text or "").split())


def first_words(text: str, count: int) -> str:
    return " ".join((text or "").split()[:count])


def opening_hook_strength(text: str) -> float:
    opening = first_words(text, 16)
    if not opening:
        return 0.0
    score = 0.0
    if STRONG_HOOK_PATTERN.search(opening):
        score += 2.4
    if re.search(r"[?!]", opening):
        score += 1.2
    if re.search(r"\d", opening):
        score += 1.0
    if _ALERT_OPENING.search(opening):
        score += 1.3
    if word_count(opening) < 6:
        score -= 0.8
    return score


def first_sentence(text: str) -> str:
    trimmed = (text or "").strip()
    parts = [part.strip() for part in re.split(r"(?<=[.!?])\s+", trimmed) if part.strip()]
    return parts[0] if parts else trimmed


def split_sentences(text: str) -> list[str]:
    normalized = normalize_text(text, 5000, 1, text)
    return [part.strip() for part in re.split(r"(?<=[.!?])\s+", normalized) if len(part.strip()) >= 14]


def trim_leading_filler(text: str) -> str:
    return _LEADING_FILLER.sub("", text or "").strip()


def pick_sentence_by_signal(sentences: list[str], signal: re.Pattern[str], fallback: str = "") -> str:
    if not sentences:
        return fallback
    best, best_score = fallback, float("-inf")
    for index, sentence in enumerate(sentences):
        score = opening_hook_strength(sentence)
        if signal.search(sentence):
            score += 2.2
        if re.search(r"\d|%|r\$", sentence, re.IGNORECASE):
            score += 0.9
        if re.search(r"[?!]", sentence):
            score += 0.7
        if index == 0:
            score += 0.35
        if score > best_score:
            best, best_score = sentence, score
    return best


def without_trailing_punctuation(text: str) -> str:
    return re.sub(r"[.!?]+$", "", text or "").strip()
