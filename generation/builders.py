"""Deterministic payload builders backing the ``heuristic`` provider.

They only restate transcript material and profile fields, so their output is
always grounded. Clip windows for reels are selected here as well and shared
with the reels prompt as ``clips_context``.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Any, Sequence

from .profile import GenerationProfile, default_profile
from .text import (
    ACTION_SIGNAL_PATTERN,
    INTRO_PATTERN,
    OUTRO_PATTERN,
    PAIN_SIGNAL_PATTERN,
    STOPWORDS,
    STRONG_HOOK_PATTERN,
    clamp,
    clean_token,
    first_sentence,
    lexical_overlap,
    ms_to_timestamp,
    normalize_text,
    opening_hook_strength,
    pick_sentence_by_signal,
    round_score,
    segment_score,
    split_sentences,
    trim_leading_filler,
    without_trailing_punctuation,
    word_count,
)
from .types import TranscriptSegment

_FALLBACK_THESIS = "Conteudo orientado a distribuicao multicanal"
_FALLBACK_TOPICS = ["conteudo", "distribuicao", "execucao"]
_DEFAULT_ACTION = "Aplicacao imediata: execute este ajuste hoje e compare o resultado em 7 dias."


@dataclass(frozen=True)
class ClipWindow:
    start_pos: int
    end_pos: int
    start_ms: int
    end_ms: int
    avg_score: float
    text: str

    @property
    def duration_s(self) -> float:
        return (self.end_ms - self.start_ms) / 1000


@dataclass(frozen=True)
class DurationPolicy:
    min_ms: int
    target_ms: int
    max_ms: int


def transcript_duration_s(segments: Sequence[TranscriptSegment]) -> int:
    if not segments:
        return 0
    return max(1, round(segments[-1].end_ms / 1000))


def pick_top_topics(segments: Sequence[TranscriptSegment], limit: int = 5) -> list[str]:
    counter: dict[str, int] = {}
    for segment in segments:
        for raw in segment.text.split():
            token = clean_token(raw)
            if len(token) < 4 or token in STOPWORDS:
                continue
            counter[token] = counter.get(token, 0) + 1
    ranked = sorted(counter.items(), key=lambda item: item[1], reverse=True)
    return [token for token, _ in ranked[:limit]]


def take_best_segments(segments: Sequence[TranscriptSegment], count: int) -> list[TranscriptSegment]:
    ranked = sorted(segments, key=lambda item: segment_score(item.text, item.tokens_est), reverse=True)
    return sorted(ranked[:count], key=lambda item: item.start_ms)


def cta_variants(mode: str, goal: str = "", target_outcome: str = "") -> list[str]:
    growth = target_outcome == "followers" or bool(
        re.search(r"(seguidor|seguidores|audiencia|audiência|alcance|crescer perfil)", goal or "", re.IGNORECASE)
    )
    if mode == "comment":
        if growth:
            return [
                "Comente sua maior trava e a metrica que vai acompanhar pelos proximos 7 dias. Siga para mais recortes praticos.",
                "Comente qual etapa voce vai executar hoje e volte em 7 dias com o resultado. Siga para os proximos cortes.",
                "Comente o seu principal bloqueio e a meta da semana para eu sugerir o proximo passo.",
            ]
        return [
            "Comente sua maior trava e o prazo que voce vai usar para testar este passo.",
            "Comente qual acao voce vai executar hoje e que metrica vai medir ate a proxima semana.",
            "Comente o contexto da sua operacao ate sexta para eu sugerir um proximo passo objetivo.",
        ]
    if mode == "share":
        if growth:
            return [
                "Compartilhe com quem precisa aplicar isso hoje e siga para receber os proximos cortes.",
                "Envie para um parceiro de operacao e comparem a metrica em 7 dias.",
                "Marque alguem que precisa ajustar este ponto ainda esta semana.",
            ]
        return [
            "Compartilhe com um parceiro que precisa aplicar isso hoje.",
            "Envie para o time e definam a metrica de validacao para os proximos 7 dias.",
            "Marque alguem que precisa executar este passo no ciclo atual.",
        ]
    if mode == "dm":
        return [
            "Me chama no direct hoje com a palavra diagnostico para receber um plano inicial.",
            "Me chama no direct com a palavra mapa e eu envio a estrutura base ainda esta semana.",
            "Me chama no direct com a palavra roteiro para iniciar com prioridade nos proximos 7 dias.",
        ]
    if mode == "lead":
        return [
            "Se quiser o template completo, comente material e eu envio o checklist.",
            "Comente mapa para receber o checklist com o passo a passo inicial.",
            "Comente plano e eu envio o modelo com estrutura de execucao.",
        ]
    if growth:
        return [
            "Se isso te ajudou, siga para os proximos recortes.",
            "Siga para receber a proxima parte com aplicacao por canal.",
            "Siga e salve este conteudo para aplicar no proximo ciclo.",
        ]
    return [
        "Aplique este passo no proximo conteudo que voce publicar.",
        "Implemente hoje e compare o resultado em 7 dias.",
        "Execute este ajuste no proximo ciclo e me conte o resultado.",
    ]


def hashtags_by_strategy(strategy: str) -> list[str]:
    return {
        "provocative": ["#opiniao", "#autoridade", "#negocios"],
        "educational": ["#aprendizado", "#conteudoeducativo", "#estrategia"],
        "contrarian": ["#contrarian", "#marketingsmart", "#posicionamento"],
        "framework": ["#framework", "#metodo", "#execucao"],
        "storytelling": ["#storytelling", "#narrativa", "#comunicacao"],
    }.get(strategy, ["#conteudo", "#distribuicao", "#crescimento"])


def sanitize_hashtags(tags: Sequence[str], fallback: Sequence[str]) -> list[str]:
    result: list[str] = []
    for source in [*tags, *fallback]:
        token = clean_token(source.lstrip("#"))
        if not 3 <= len(token) <= 24 or token.isdigit():
            continue
        tag = f"#{token}"
        if tag not in result:
            result.append(tag)
        if len(result) >= 8:
            break
    return result if len(result) >= 3 else ["#conteudo", "#negocios", "#crescimento"]


def reels_clip_count(duration_s: int, length: str) -> int:
    base = 2 if duration_s < 240 else 3
    offset = (1 if duration_s >= 600 else 0) if length == "long" else -1 if length == "short" else 0
    return max(2, min(4, base + offset))


def reels_duration_policy(duration_s: int, length: str, target_outcome: str = "followers") -> DurationPolicy:
    presets = {"short": (16_000, 22_000, 34_000), "long": (24_000, 34_000, 52_000)}
    low, target, high = presets.get(length, (20_000, 30_000, 45_000))
    offsets = {
        "followers": (-2_000, -4_000, -4_000),
        "shares": (0, 1_000, 2_000),
        "leads": (2_000, 4_000, 5_000),
        "authority": (1_000, 3_000, 4_000),
    }
    d_low, d_target, d_high = offsets.get(target_outcome, (0, 0, 0))
    low = max(10_000, low + d_low)
    target = max(14_000, target + d_target)
    high = max(22_000, high + d_high)
    if duration_s < 120:
        return DurationPolicy(max(14_000, low - 4_000), max(18_000, target - 6_000), max(30_000, high - 6_000))
    return DurationPolicy(low, target, high)


def _make_window(segments: Sequence[TranscriptSegment], left: int, right: int) -> ClipWindow:
    chunk = segments[left : right + 1]
    avg = sum(segment_score(item.text, item.tokens_est) for item in chunk) / max(1, len(chunk))
    return ClipWindow(
        start_pos=left,
        end_pos=right,
        start_ms=segments[left].start_ms,
        end_ms=segments[right].end_ms,
        avg_score=avg,
        text=" ".join(item.text for item in chunk),
    )


def _window_from_seed(segments: Sequence[TranscriptSegment], seed: int, policy: DurationPolicy) -> ClipWindow:
    left = right = seed
    last = len(segments) - 1

    def duration() -> int:
        return segments[right].end_ms - segments[left].start_ms

    while duration() < policy.min_ms and (left > 0 or right < last):
        if right < last:
            right += 1
        if duration() >= policy.min_ms:
            break
        if left > 0:
            left -= 1

    while duration() < policy.target_ms and (left > 0 or right < last):
        right_duration = segments[right + 1].end_ms - segments[left].start_ms if right < last else None
        left_duration = segments[right].end_ms - segments[left - 1].start_ms if left > 0 else None
        take_right = right_duration is not None and right_duration <= policy.max_ms
        take_left = left_duration is not None and left_duration <= policy.max_ms
        if not take_right and not take_left:
            break
        if take_right and (not take_left or right_duration <= left_duration):
            right += 1
        else:
            left -= 1
    return _make_window(segments, left, right)


def _seed_context_score(segments: Sequence[TranscriptSegment], index: int, duration_s: int) -> float:
    segment = segments[index]
    progress = index / max(1, len(segments) - 1)
    start_s = segment.start_ms / 1000
    remaining_s = duration_s - start_s
    text = segment.text
    value = 0.0
    if duration_s >= 120 and start_s < 20:
        value -= 3.4
    elif duration_s >= 120 and start_s < 40:
        value -= 1.8
    elif duration_s >= 75 and start_s < 10:
        value -= 1.5
    if remaining_s < 15 and duration_s > 40:
        value -= 1.7
    if progress > 0.9:
        value -= 0.8
    if INTRO_PATTERN.search(text):
        value -= 3.0
    if OUTRO_PATTERN.search(text):
        value -= 2.4
    if STRONG_HOOK_PATTERN.search(text):
        value += 1.1
    if re.search(r"\d", text):
        value += 0.5
    value += opening_hook_strength(text) * 0.55
    words = word_count(text)
    if 14 <= words <= 60:
        value += 0.8
    if words < 8:
        value -= 0.8
    return value


def window_editorial_score(window: ClipWindow, duration_s: int) -> float:
    start_s = window.start_ms / 1000
    words = word_count(window.text)
    value = window.avg_score
    if 18 <= window.duration_s <= 42:
        value += 1.2
    elif window.duration_s < 14:
        value -= 1.2
    elif window.duration_s > 50:
        value -= 0.7
    if 26 <= words <= 120:
        value += 1.0
    elif words < 20:
        value -= 1.0
    if INTRO_PATTERN.search(window.text):
        value -= 3.1
    if OUTRO_PATTERN.search(window.text):
        value -= 2.2
    if STRONG_HOOK_PATTERN.search(window.text):
        value += 1.2
    value += opening_hook_strength(window.text)
    if duration_s >= 120 and start_s < 20:
        value -= 2.2
    if duration_s - start_s < 15 and duration_s > 50:
        value -= 1.8
    return value


def _is_weak_window(window: ClipWindow, duration_s: int) -> bool:
    start_s = window.start_ms / 1000
    hook = opening_hook_strength(window.text)
    if duration_s >= 80 and start_s <= 20 and INTRO_PATTERN.search(window.text) and hook < 2.4:
        return True
    if duration_s >= 70 and duration_s - start_s <= 18 and OUTRO_PATTERN.search(window.text) and hook < 2.6:
        return True
    return duration_s >= 150 and start_s <= 30 and hook < 3.1


def _overlaps(a: ClipWindow, b: ClipWindow, buffer_ms: int = 2_500) -> bool:
    return not (a.end_ms + buffer_ms < b.start_ms or b.end_ms + buffer_ms < a.start_ms)


def select_clip_windows(
    segments: Sequence[TranscriptSegment],
    clip_count: int,
    duration_s: int,
    length: str = "standard",
    target_outcome: str = "followers",
) -> list[ClipWindow]:
    """Pick up to ``clip_count`` non-overlapping windows with a strong opening hook."""
    if not segments or clip_count <= 0:
        return []
    policy = reels_duration_policy(duration_s, length, target_outcome)
    seeds = sorted(
        (
            (segment_score(segment.text, segment.tokens_est) + _seed_context_score(segments, index, duration_s), index)
            for index, segment in enumerate(segments)
        ),
        key=lambda item: item[0],
        reverse=True,
    )
    candidates: dict[tuple[int, int], tuple[float, ClipWindow]] = {}
    for seed_score, index in seeds[:90]:
        window = _window_from_seed(segments, index, policy)
        if _is_weak_window(window, duration_s) or opening_hook_strength(window.text) < 2.5:
            continue
        editorial = window_editorial_score(window, duration_s) + seed_score * 0.35
        key = (window.start_pos, window.end_pos)
        if key not in candidates or editorial > candidates[key][0]:
            candidates[key] = (editorial, window)
    ranked = [window for _, window in sorted(candidates.values(), key=lambda item: item[0], reverse=True)]

    selected: list[ClipWindow] = []
    for window in ranked:
        if not any(_overlaps(existing, window) for existing in selected):
            selected.append(window)
        if len(selected) >= clip_count:
            break
    if len(selected) < clip_count:
        for _, index in seeds:
            if len(selected) >= clip_count:
                break
            window = _window_from_seed(segments, index, policy)
            if _is_weak_window(window, duration_s) or opening_hook_strength(window.text) < 2.1:
                continue
            if not any(_overlaps(existing, window) for existing in selected):
                selected.append(window)
    if not selected:
        selected.append(_window_from_seed(segments, seeds[0][1], policy))
    return sorted(selected[:clip_count], key=lambda item: item.start_ms)


def clips_context(windows: Sequence[ClipWindow], segments: Sequence[TranscriptSegment]) -> str:
    lines = []
    for number, window in enumerate(windows, start=1):
        lines.append(
            f"JANELA {number}: startIdx={segments[window.start_pos].idx} endIdx={segments[window.end_pos].idx} "
            f"{ms_to_timestamp(window.start_ms)}-{ms_to_timestamp(window.end_ms)} "
            f"({round(window.duration_s)}s) | {normalize_text(window.text, 420, 1, window.text)}"
        )
    return "\n".join(lines)


def anchored_title(source: str, fallback: str = "") -> str:
    seed = trim_leading_filler(
        pick_sentence_by_signal(split_sentences(source), STRONG_HOOK_PATTERN, first_sentence(source) or fallback)
    )
    base = without_trailing_punctuation(normalize_text(seed or source, 200, 8, fallback))
    if not base:
        return normalize_text(fallback or source, 220, 6, fallback)
    if not PAIN_SIGNAL_PATTERN.search(base) and len(base.split()) < 6:
        base = f"Erro recorrente: {base}"
    return normalize_text(base, 220, 6, fallback)


def anchored_caption(source: str, cta: str, fallback: str = "") -> str:
    sentences = split_sentences(source)
    seed = first_sentence(source) or fallback
    hook = trim_leading_filler(pick_sentence_by_signal(sentences, PAIN_SIGNAL_PATTERN, seed))
    insight = trim_leading_filler(
        pick_sentence_by_signal(
            [item for item in sentences if lexical_overlap(item, hook) < 0.86],
            re.compile(r"(porque|por isso|quando|se|regra|metodo|framework|resultado|cliente|venda)", re.IGNORECASE),
            seed,
        )
    )
    action = trim_leading_filler(
        pick_sentence_by_signal(
            [item for item in sentences if lexical_overlap(item, hook) < 0.9 and lexical_overlap(item, insight) < 0.9],
            ACTION_SIGNAL_PATTERN,
            insight or hook or seed,
        )
    )
    hook_core = without_trailing_punctuation(normalize_text(hook, 170, 18, seed))
    insight_core = without_trailing_punctuation(normalize_text(insight, 190, 24, hook_core or seed))
    action_core = without_trailing_punctuation(normalize_text(action, 170, 22, insight_core or hook_core or seed))
    if hook.strip().endswith("?"):
        hook_line = normalize_text(hook, 180, 18, hook_core or seed)
    elif PAIN_SIGNAL_PATTERN.search(hook_core):
        hook_line = normalize_text(f"Ponto critico: {hook_core}.", 220, 18, hook_core or seed)
    else:
        hook_line = normalize_text(f"Insight que muda o resultado: {hook_core}.", 220, 18, hook_core or seed)
    lines = [hook_line, normalize_text(f"No corte: {insight_core}.", 260, 26, insight_core or hook_core or seed)]
    if ACTION_SIGNAL_PATTERN.search(action_core):
        lines.append(normalize_text(f"Aplicacao imediata: {action_core}.", 260, 24, _DEFAULT_ACTION))
    else:
        lines.append(_DEFAULT_ACTION)
    unique: list[str] = []
    for line in lines:
        if line and not any(lexical_overlap(existing, line) >= 0.92 for existing in unique):
            unique.append(line)
    if cta:
        unique.append(normalize_text(cta, 260, 8, cta))
    return normalize_text("\n\n".join(unique), 5000, 140, "\n\n".join([seed or fallback, _DEFAULT_ACTION, cta]))


def anchored_why_it_works(source: str, cta: str) -> str:
    opening = normalize_text(first_sentence(source), 200, 1, source)
    strength = opening_hook_strength(source)
    label = "gancho forte" if strength >= 2.8 else "gancho claro" if strength >= 2.2 else "gancho moderado"
    if re.search(r"(\d|%|r\$|caso|exemplo|resultado|metrica|prova)", source, re.IGNORECASE):
        proof = "O trecho tem sinal concreto que aumenta credibilidade e favorece compartilhamento."
    else:
        proof = "O trecho expoe uma dor real com linguagem direta e permite aplicacao pratica sem contexto externo."
    if cta:
        closing = "O CTA final direciona uma acao objetiva para transformar atencao em interacao qualificada."
    else:
        closing = "A mensagem fecha com proximo passo claro para manter retencao ate o final."
    return normalize_text(f'A abertura trabalha {label} com frase de impacto: "{opening}". {proof} {closing}', 2400, 8)


def build_analysis(segments: Sequence[TranscriptSegment], profile: GenerationProfile | None = None) -> dict[str, Any]:
    profile = profile or default_profile()
    task_cfg = profile.tasks["analysis"]
    full_text = " ".join(segment.text for segment in segments)
    topics = pick_top_topics(segments, 6) or list(_FALLBACK_TOPICS)
    if re.search(r"historia|quando|aconteceu|experiencia", full_text, re.IGNORECASE):
        content_type = "story"
    elif re.search(r"framework|modelo|passo|processo|metodo", full_text, re.IGNORECASE):
        content_type = "framework"
    elif re.search(r"discorda|polemica|controvers", full_text, re.IGNORECASE):
        content_type = "provocative"
    else:
        content_type = "educational"
    thesis = normalize_text(segments[0].text if segments else "", 1600, 20, _FALLBACK_THESIS)
    excitement = len(re.findall(r"[!?]", full_text))
    polarity = clamp(round(4 + excitement / 3 + (2 if content_type == "provocative" else 1)), 0, 10)
    highlights = take_best_segments(segments, 6)

    def highlight(position: int, fallback: str) -> str:
        text = highlights[position].text if position < len(highlights) else fallback
        return normalize_text(text, 1600, 8, fallback)

    structure = {
        "problem": highlight(0, "Conteudo sem problema explicito. Necessario declarar dor central com clareza."),
        "tension": highlight(1, "Tensao narrativa pouco explicita entre estado atual e resultado desejado."),
        "insight": highlight(2, thesis),
        "application": highlight(3, "Converter o insight em passo pratico executavel para o publico-alvo."),
    }
    moments = []
    for position, segment in enumerate(highlights[:5]):
        if position == 0:
            kind = "hook"
        elif re.search(r"erro|nao faca|evite|alerta", segment.text, re.IGNORECASE):
            kind = "alerta"
        elif re.search(r"passo|metodo|framework|regra", segment.text, re.IGNORECASE):
            kind = "framework"
        else:
            kind = "insight"
        if re.search(r"erro|evite|alerta", segment.text, re.IGNORECASE):
            why = "Abre loop de risco e gera urgencia para continuar assistindo."
        elif re.search(r"passo|metodo|framework|regra", segment.text, re.IGNORECASE):
            why = "Entrega estrutura acionavel que aumenta salvamentos e compartilhamentos."
        else:
            why = "Trecho com contraste e clareza suficiente para prender atencao sem contexto."
        moments.append({"text": normalize_text(segment.text, 1600, 8, thesis), "type": kind, "whyItGrabs": why})
    main_topic = topics[0]
    second_topic = topics[1] if len(topics) > 1 else main_topic
    return {
        "thesis": thesis,
        "topics": topics,
        "contentType": content_type,
        "polarityScore": polarity,
        "recommendations": [
            f"Refine a tese para o publico-alvo: {profile.audience}.",
            f"Aplique o objetivo central no texto: {profile.goal}.",
            f"Use estrategia {task_cfg.strategy} com tom {profile.tone.lower()}.",
            "Estruture a narrativa em problema, tensao, insight e aplicacao para elevar clareza.",
        ],
        "structure": structure,
        "retentionMoments": moments,
        "editorialAngles": [
            {
                "angle": normalize_text(f"Diagnostico pratico sobre {main_topic}", 180, 8),
                "idealChannel": "linkedin",
                "format": "post com framework",
                "whyStronger": "Canal favorece argumentacao e comentarios qualificados.",
            },
            {
                "angle": normalize_text(f"Erro recorrente em {second_topic}", 180, 8),
                "idealChannel": "reels",
                "format": "corte com alerta",
                "whyStronger": "Gancho forte com aplicacao imediata tende a elevar retencao.",
            },
            {
                "angle": normalize_text(f"Checklist de aplicacao para {profile.audience}", 180, 8),
                "idealChannel": "newsletter",
                "format": "guia estruturado",
                "whyStronger": "Formato permite aprofundamento com passos claros.",
            },
        ],
        "weakSpots": [
            {
                "issue": "Termos genericos em partes da transcricao",
                "why": "Generalidades reduzem memorabilidade e dificultam transformacao em cortes fortes.",
            },
            {
                "issue": "Possivel dependencia de contexto externo",
                "why": "Algumas frases isoladas podem perder clareza quando publicadas sem explicacao adicional.",
            },
        ],
        "qualityScores": {
            "insightDensity": 6.8,
            "standaloneClarity": 7.2,
            "polarity": round_score(polarity),
            "practicalValue": 7.1,
        },
    }


def _clip_scores(window: ClipWindow, duration_s: int, polarity: float, strategy: str) -> dict[str, int]:
    editorial = window_editorial_score(window, duration_s)
    bonus = 1 if strategy in ("provocative", "contrarian") else 0
    hook = round(clamp(editorial + 2.8 + bonus, 5, 9))
    clarity = round(clamp(8.8 - abs(round(window.duration_s) - 30) / 8, 5, 9))
    retention = round(clamp((hook + clarity + clamp(editorial, 0, 10)) / 3, 5, 9))
    share = round(clamp((retention + polarity) / 2, 5, 9))
    return {"hook": hook, "clarity": clarity, "retention": retention, "share": share}


def build_reels(
    segments: Sequence[TranscriptSegment],
    analysis: dict[str, Any],
    profile: GenerationProfile | None = None,
    windows: Sequence[ClipWindow] | None = None,
) -> dict[str, Any]:
    profile = profile or default_profile()
    task_cfg = profile.tasks["reels"]
    duration_s = transcript_duration_s(segments)
    count = reels_clip_count(duration_s, task_cfg.length)
    chosen = list(windows or select_clip_windows(segments, count, duration_s, task_cfg.length, task_cfg.target_outcome))
    thesis = analysis.get("thesis") or _FALLBACK_THESIS
    strategy_tags = hashtags_by_strategy(task_cfg.strategy)
    topic_tags = [f"#{clean_token(topic)}" for topic in (analysis.get("topics") or [])[:4]]
    ctas = cta_variants(task_cfg.cta_mode, profile.goal, task_cfg.target_outcome)
    clips = []
    for index, window in enumerate(chosen[:count]):
        cta = ctas[index % len(ctas)]
        excerpt = normalize_text(window.text, 2200, 24, thesis)
        clips.append(
            {
                "title": normalize_text(anchored_title(window.text, thesis), 220, 12, thesis),
                "start": ms_to_timestamp(window.start_ms),
                "end": ms_to_timestamp(window.end_ms),
                "caption": anchored_caption(excerpt, cta, thesis),
                "hashtags": sanitize_hashtags([*strategy_tags, *topic_tags], strategy_tags),
                "scores": _clip_scores(window, duration_s, float(analysis.get("polarityScore") or 5), task_cfg.strategy),
                "whyItWorks": anchored_why_it_works(window.text, cta),
            }
        )
    return {"clips": clips}


def _dedupe(items: Sequence[str], threshold: float) -> list[str]:
    unique: list[str] = []
    for item in items:
        if item and not any(lexical_overlap(existing, item) >= threshold for existing in unique):
            unique.append(item)
    return unique


def build_newsletter(
    segments: Sequence[TranscriptSegment],
    analysis: dict[str, Any],
    profile: GenerationProfile | None = None,
) -> dict[str, Any]:
    profile = profile or default_profile()
    task_cfg = profile.tasks["newsletter"]
    thesis = analysis.get("thesis") or _FALLBACK_THESIS
    topics = analysis.get("topics") or _FALLBACK_TOPICS
    recommendations = analysis.get("recommendations") or [thesis]
    structure = analysis.get("structure") or {}
    strongest = [segment.text for segment in take_best_segments(segments, 8)]
    insight_count = {"short": 2, "long": 4}.get(task_cfg.length, 3)
    bodies = _dedupe([normalize_text(line, 4000, 30, thesis) for line in strongest[:insight_count]], 0.86)
    while len(bodies) < insight_count:
        bodies.append(normalize_text(recommendations[len(bodies) % len(recommendations)], 4000, 30, thesis))
    insights = []
    for index, text in enumerate(bodies[:insight_count]):
        if index == 0:
            insights.append({"type": "insight", "title": "Mecanismo causal central", "text": normalize_text(f"Mecanismo: {text}", 4000, 30, text)})
        else:
            insights.append({"type": "insight", "title": f"Implicacao pratica {index}", "text": text})
    kpi = profile.performance_memory["newsletter"].kpi or "respostas qualificadas"
    checklist_candidates = [
        structure.get("application", ""),
        *recommendations[:3],
        strongest[insight_count] if len(strongest) > insight_count else "",
        f"Aplique o angulo {task_cfg.strategy} com criterio de {task_cfg.target_outcome}.",
        f"Defina metrica principal: {kpi}.",
    ]
    checklist = _dedupe([normalize_text(item, 1200, 24) for item in checklist_candidates], 0.84)
    checklist = [item for item in checklist if len(item) >= 24][: 6 if task_cfg.length == "long" else 5]
    cta = cta_variants(task_cfg.cta_mode, profile.goal, task_cfg.target_outcome)[0]
    return {
        "headline": normalize_text(f"Como aplicar {topics[0]} para {profile.audience}", 300, 12),
        "subheadline": normalize_text(
            f"Objetivo: {profile.goal}. Estrategia: {task_cfg.strategy}. "
            f"Mecanismo causal: {structure.get('insight') or thesis}",
            2400,
            42,
        ),
        "sections": [
            {
                "type": "intro",
                "text": normalize_text(
                    f"{structure.get('problem') or thesis} Tensao: "
                    f"{structure.get('tension') or 'o problema cresce quando nao existe distribuicao por canal.'} "
                    f"Contexto: publico {profile.audience}.",
                    4000,
                    90,
                ),
            },
            *insights,
            {"type": "application", "bullets": checklist},
            {
                "type": "cta",
                "text": normalize_text(
                    f"{cta} Qual metrica voce vai acompanhar na proxima semana para validar a execucao?", 2000, 26
                ),
            },
        ],
    }


def build_linkedin(
    segments: Sequence[TranscriptSegment],
    analysis: dict[str, Any],
    profile: GenerationProfile | None = None,
) -> dict[str, Any]:
    profile = profile or default_profile()
    task_cfg = profile.tasks["linkedin"]
    thesis = analysis.get("thesis") or _FALLBACK_THESIS
    structure = analysis.get("structure") or {}
    recommendations = list(analysis.get("recommendations") or [])
    best = take_best_segments(segments, 6)
    proof = next((segment.text for segment in best if re.search(r"\d|%|r\$", segment.text, re.IGNORECASE)), None)
    proof = proof or (best[0].text if best else structure.get("insight") or thesis)
    mechanism = structure.get("insight") or (recommendations[0] if recommendations else "") or (
        "Sem mecanismo causal claro, a execucao vira tentativa e erro."
    )
    defaults = [
        "Defina uma tese operacional clara.",
        "Transforme em rotina de distribuicao por canal.",
        "Meca resultado e ajuste com frequencia semanal.",
    ]
    steps = [normalize_text(recommendations[i] if i < len(recommendations) else defaults[i], 2900, 18, defaults[i]) for i in range(3)]
    extra = []
    if task_cfg.length == "long":
        kpi = profile.performance_memory["linkedin"].kpi or "comentarios qualificados e salvamentos"
        extra = [
            normalize_text(f"Publico foco: {profile.audience}. Objetivo: {profile.goal}.", 2400, 18),
            normalize_text(f"KPI principal para validar progresso: {kpi}.", 2400, 18),
        ]
    cta = cta_variants(task_cfg.cta_mode, profile.goal, task_cfg.target_outcome)[0]
    return {
        "hook": normalize_text(f"Tese forte: {thesis}", 1200, 26),
        "body": [
            normalize_text(f"Prova: {proof}", 3000, 24, thesis),
            normalize_text(f"Mecanismo: {mechanism}", 3000, 24, thesis),
            *(normalize_text(f"Framework {i + 1}/3: {step}", 3000, 24) for i, step in enumerate(steps)),
            *extra,
            normalize_text(
                f"Aplicacao imediata: rode essa estrutura por duas semanas com estrategia {task_cfg.strategy} "
                f"e compare a evolucao de {task_cfg.target_outcome}.",
                3000,
                24,
            ),
        ],
        "ctaQuestion": normalize_text(
            f"{cta} Qual metrica concreta voce vai reportar na proxima semana para provar que isso funcionou?", 1000, 30
        ),
    }


def _fit_post(text: str, fallback: str = "") -> str:
    return normalize_text(text, 280, 8, fallback)


def build_x(
    segments: Sequence[TranscriptSegment],
    analysis: dict[str, Any],
    profile: GenerationProfile | None = None,
) -> dict[str, Any]:
    profile = profile or default_profile()
    task_cfg = profile.tasks["x"]
    thesis = analysis.get("thesis") or _FALLBACK_THESIS
    structure = analysis.get("structure") or {}
    recommendations = list(analysis.get("recommendations") or [])
    ideas = _dedupe(
        [
            normalize_text(item, 1600, 8)
            for item in [
                thesis,
                *(structure.get(key, "") for key in ("problem", "tension", "insight", "application")),
                *recommendations,
                *(segment.text for segment in take_best_segments(segments, 14)),
            ]
        ],
        0.92,
    )
    standalone_count = {"long": 6, "short": 4}.get(task_cfg.length, 5)
    thread_count = {"long": 8, "short": 5}.get(task_cfg.length, 6)
    ctas = cta_variants(task_cfg.cta_mode, profile.goal, task_cfg.target_outcome)
    standalone_seed = [
        f"Tese central: {thesis}. Se voce publica o mesmo texto em todos os canais, voce perde retencao e resposta qualificada.",
        "Erro recorrente: confundir consistencia com volume. Consistencia real e sistema com hook, formato e CTA adaptados por canal.",
        "Mecanismo pratico: uma ideia forte vira um reel, um post de LinkedIn, uma thread e uma newsletter com angulos diferentes.",
        f"Publico alvo: {profile.audience}. Sem criterio por canal, o alcance nao vira resultado.",
        "Framework rapido: tese, prova, aplicacao e CTA. Se faltar uma dessas etapas, a distribuicao perde eficiencia.",
        f"{ideas[0] if ideas else thesis} Aplicacao imediata: rode esse ajuste por uma semana e compare com a anterior.",
        f"{ideas[1] if len(ideas) > 1 else thesis} {ctas[1]}",
    ]
    thread_seed = [
        f"{thesis} Esse e o ponto que separa conteudo que gera alcance de conteudo que gera crescimento real.",
        "Problema: publicar igual em todos os canais. Resultado: queda de retencao e resposta superficial.",
        "Friccao: voce acredita que o volume resolve. Na pratica, sem adaptacao de hook e CTA, a audiencia ignora.",
        "Insight: cada canal responde a um gatilho diferente. Reels pede ritmo, LinkedIn pede prova, X pede tensao.",
        "Aplicacao: escolha um video e extraia trechos com conflitos distintos. Cada trecho vira um ativo com promessa propria.",
        "Aplicacao: no fechamento, use CTA observavel com prazo, como comentar a metrica que vai acompanhar na semana.",
        f"{ideas[2] if len(ideas) > 2 else thesis} {ctas[0]}",
        "Fechamento: execute por uma semana, compare as metricas de retencao e compartilhe o resultado para ajustar a proxima rodada.",
    ]
    standalone = [_fit_post(post, thesis) for post in standalone_seed[:standalone_count]]
    chosen_thread = thread_seed[:thread_count]
    thread = [_fit_post(f"{i + 1}/{len(chosen_thread)} {post}", post) for i, post in enumerate(chosen_thread)]
    return {
        "standalone": standalone,
        "thread": thread,
        "notes": {
            "style": normalize_text(
                f"{task_cfg.strategy}, {task_cfg.length}, tom {profile.tone.lower()}, foco em substancia e aplicacao",
                300,
                3,
            )
        },
    }


def build_heuristic_payload(
    task: str,
    segments: Sequence[TranscriptSegment],
    profile: GenerationProfile | None = None,
    analysis: dict[str, Any] | None = None,
    windows: Sequence[ClipWindow] | None = None,
) -> dict[str, Any]:
    """Deterministic payload for ``task``; downstream tasks rebuild analysis when none is given."""
    if task == "analysis":
        return build_analysis(segments, profile)
    base = analysis or build_analysis(segments, profile)
    if task == "reels":
        return build_reels(segments, base, profile, windows)
    if task == "newsletter":
        return build_newsletter(segments, base, profile)
    if task == "linkedin":
        return build_linkedin(segments, base, profile)
    if task == "x":
        return build_x(segments, base, profile)
    raise ValueError(f"unknown task: {task}")
