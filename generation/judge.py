from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import re
from typing import Any

from llm.gateway import ProviderGateway, get_gateway
from llm.jsonparse import JSONParseError, parse_json_object
from llm.routing import JUDGE_MAX_TOKENS, AIRoute, task_timeout_s
from .evidence import collect_string_blocks
from .text import (
    clamp,
    has_ellipsis_artifact,
    normalize_text,
    repeated_ratio,
    round_score,
    truncate,
)
from .types import SUBSCORE_KEYS, QualityEvaluation

logger = logging.getLogger(__name__)

QUALITY_RUBRICS = {
    "analysis": (
        "thesis: mecanica causal explicita e falsificavel; topics: concretos, sem placeholders vagos; "
        "recommendations: acionaveis em 30-90 dias; structure: problema, tensao, insight e aplicacao coerentes; "
        "retentionMoments/editorialAngles: utilidade real por canal; penalizar inflacao de nota sem evidencia textual"
    ),
    "reels": (
        "clip com janela temporal forte e sem introducao fraca; title com tensao imediata e promessa concreta; "
        "caption com aplicacao pratica e CTA aderente ao objetivo; hashtags especificas e sem poluicao; "
        "whyItWorks com racional objetivo de retencao"
    ),
    "newsletter": (
        "progressao logica sem repeticao; insights densos com mecanismo causal; "
        "aplicacao com checklist operacional; cta com intencao qualificada e criterio"
    ),
    "linkedin": (
        "hook forte sem clickbait raso; corpo progressivo com evidencias e aplicacao; "
        "clareza sem contexto externo; cta final especifico e nao binario"
    ),
    "x": (
        "standalone com punchline e substancia; thread com progressao real por etapas; "
        "baixa repeticao lexical e argumentativa; aplicabilidade e memorabilidade"
    ),
}

_TASK_JUDGE_LINES = {
    "analysis": (
        "Para analysis, punir tese superficial, topicos vagos, recomendacoes nao acionaveis, "
        "ausencia de mecanismo causal, retention moments fracos e notas infladas sem evidencia."
    ),
    "reels": "Para reels, punir corte sem gancho, legenda generica, CTA fraco, hashtag ruim e justificativa vaga.",
    "newsletter": (
        "Para newsletter, punir abstracao, falta de progressao, falta de aplicacao e cta sem especificidade."
    ),
    "linkedin": "Para linkedin, punir hook fraco, repeticao, corpo sem argumento e pergunta final generica.",
    "x": "Para x, punir thread sem progressao, baixa densidade e posts sem memorabilidade.",
}

_SUBSCORE_ANCHORS = (
    "clarity: 10 = entendivel sem contexto externo | 6 = exige releitura | 2 = confuso",
    "depth: 10 = mecanismo causal e prova concreta | 6 = correto porem raso | 2 = slogan",
    "originality: 10 = angulo proprio e memoravel | 6 = previsivel | 2 = cliche puro",
    "applicability: 10 = passo executavel hoje com criterio | 6 = conselho generico | 2 = nada acionavel",
    "retentionPotential: 10 = gancho e progressao prendem ate o fim | 6 = atencao oscila | 2 = abandono imediato",
)

_SUBSCORE_ALIASES = {
    "clarity": ("clarity", "clareza"),
    "depth": ("depth", "profundidade"),
    "originality": ("originality", "originalidade"),
    "applicability": ("applicability", "aplicabilidade"),
    "retention_potential": ("retention_potential", "retentionPotential", "retention", "retencao"),
}

_FALLBACK_BASE_DEDUCTIONS = {
    "clarity": 0.35,
    "depth": 0.45,
    "originality": 0.4,
    "applicability": 0.3,
    "retention_potential": 0.25,
}

_LEAD_INTENT = re.compile(r"(comente|responda|baixe|material|checklist|template|inscreva|direct|link)", re.IGNORECASE)
_PRACTICAL_MARKER = re.compile(r"(passo|framework|aplicacao|checklist|metrica|execute|rode|teste)", re.IGNORECASE)
_ACTION_WORD = re.compile(r"(aplique|execute|teste|rode|meca|defina|corte|publique|compare|use)", re.IGNORECASE)
_GENERIC_TOPIC = re.compile(r"^(conteudo|tema|assunto|geral|negocios|coisas?)$", re.IGNORECASE)
_CORTE_TITLE = re.compile(r"^\s*corte\s+\d+", re.IGNORECASE)


@dataclass(frozen=True)
class JudgeResult:
    evaluation: QualityEvaluation | None
    unavailable_reason: str | None = None
    provider: str = "heuristic"
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0
    actual_cost_usd: float | None = None

    @property
    def available(self) -> bool:
        return self.evaluation is not None


def quality_rubric(task: str) -> str:
    return QUALITY_RUBRICS[task]


def judge_system_prompt(task: str) -> str:
    return "\n".join(
        [
            "Voce e um Juiz Editorial Senior.",
            "Avalie o JSON candidato sem reescrever o conteudo.",
            "Modo strict: avalie com criterio tecnico duro, sem inflar nota.",
            "Seja rigido contra texto generico e score inflado.",
            "Se houver truncamento, repeticao excessiva ou schema parcial, aplique penalidade forte.",
            _TASK_JUDGE_LINES[task],
            "Retorne SOMENTE JSON valido.",
        ]
    )


def judge_user_prompt(task: str, payload: dict[str, Any], context: str) -> str:
    return "\n".join(
        [
            f"TAREFA: {task}",
            "MODO_AVALIACAO: strict",
            f"RUBRICA: {quality_rubric(task)}",
            "ANCORAS_DE_NOTA: 10 = elite publicavel sem ajustes | 8 = bom com poucos ajustes | "
            "6 = mediano | 4 = fraco | 2 = inutilizavel",
            "ANCORAS_POR_SUBNOTA:",
            *(f"- {line}" for line in _SUBSCORE_ANCHORS),
            "REQUISITO: se houver truncamento ou reticencias, qualityScore maximo 6.5.",
            "REQUISITO: notas acima de 9.5 exigem prova textual explicita no candidato.",
            f"CONTEXTO:\n{truncate(context, 6000)}",
            f"JSON_CANDIDATO:\n{json.dumps(payload, ensure_ascii=False)}",
            "FORMATO DE RESPOSTA:",
            '{ "qualityScore": 0-10, "subscores": { "clarity": 0-10, "depth": 0-10, "originality": 0-10, '
            '"applicability": 0-10, "retentionPotential": 0-10 }, "summary": "...", "weaknesses": ["..."], '
            '"confidence": 0-1 }',
        ]
    )


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", "."))
        except ValueError:
            return None
    return None


def _first_present(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _lookup(data: dict[str, Any], aliases: tuple[str, ...]) -> float | None:
    for alias in aliases:
        value = _number(data.get(alias))
        if value is not None:
            return value
    return None


def coerce_judge_evaluation(data: dict[str, Any]) -> QualityEvaluation | None:
    """Map a judge reply onto a ``QualityEvaluation``; None when no overall score is present."""
    score = _number(_first_present(data, "qualityScore", "quality_score", "score", "overall"))
    if score is None:
        return None
    score = round_score(score)
    raw_subscores = _first_present(data, "subscores", "scores")
    raw_subscores = raw_subscores if isinstance(raw_subscores, dict) else {}
    subscores = {}
    for key in SUBSCORE_KEYS:
        value = _lookup(raw_subscores, _SUBSCORE_ALIASES[key])
        if value is None:
            value = _lookup(data, _SUBSCORE_ALIASES[key])
        subscores[key] = round_score(value if value is not None else score)
    summary_raw = _first_present(data, "summary", "rationale", "reason")
    summary = normalize_text(str(summary_raw or ""), 220, 1, "Judge sem observacoes") or "Judge sem observacoes"
    weaknesses_raw = _first_present(data, "weaknesses", "issues")
    weaknesses = []
    if isinstance(weaknesses_raw, list):
        weaknesses = [normalize_text(str(item), 220) for item in weaknesses_raw if str(item).strip()][:6]
    elif isinstance(weaknesses_raw, str) and weaknesses_raw.strip():
        weaknesses = [normalize_text(weaknesses_raw, 220)]
    return QualityEvaluation(score=score, subscores=subscores, summary=summary, weaknesses=weaknesses)


def normalize_unavailable_reason(reason: str | None) -> str:
    text = (reason or "").strip()
    lowered = text.lower()
    if not text:
        return "judge_empty_response"
    if lowered.startswith("judge_"):
        return lowered[:80]
    if "heuristic" in lowered:
        return "judge_provider_set_heuristic"
    if "missing api key" in lowered or "key missing" in lowered or "auth_missing" in lowered:
        return "judge_provider_key_missing"
    if "circuit" in lowered:
        return "judge_circuit_open"
    if "abort" in lowered or "timeout" in lowered or "timed out" in lowered:
        return "judge_request_aborted_or_timeout"
    if "schema" in lowered:
        return "judge_schema_parse_failed"
    if "json" in lowered:
        return "judge_invalid_json_response"
    if "empty" in lowered:
        return "judge_empty_response"
    compact = re.sub(r"[^a-z0-9]+", "_", lowered).strip("_")[:80].strip("_")
    return f"judge_{compact}"[:80] if compact else "judge_request_failed"


def fallback_judge_evaluation(
    task: str,
    payload: dict[str, Any],
    heuristic: QualityEvaluation,
    reason: str,
) -> QualityEvaluation:
    """Penalised stand-in for an unavailable judge; feeds the publishability projection only."""
    subscores = {key: heuristic.subscores.get(key, heuristic.score) - _FALLBACK_BASE_DEDUCTIONS[key] for key in SUBSCORE_KEYS}
    alerts: list[str] = []

    def deduct(key: str, amount: float, alert: str) -> None:
        subscores[key] -= amount
        alerts.append(alert)

    texts = [text for _, text in collect_string_blocks(task, payload)]
    if any(has_ellipsis_artifact(text) for text in texts):
        deduct("clarity", 1.1, "truncamento detectado")
        subscores["applicability"] -= 0.7
    repetition = repeated_ratio(texts)
    if repetition >= 0.22:
        deduct("originality", 0.9, "repeticao alta")
    elif repetition >= 0.14:
        deduct("originality", 0.5, "repeticao moderada")

    if task == "analysis":
        if len(payload.get("recommendations") or []) < 4:
            deduct("applicability", 0.8, "poucas recomendacoes")
        if len(payload.get("thesis") or "") < 70:
            deduct("depth", 0.7, "tese curta")
        if any(_GENERIC_TOPIC.match(str(topic).strip()) for topic in payload.get("topics") or []):
            deduct("clarity", 0.5, "topicos genericos")
        if len(payload.get("weakSpots") or []) < 2:
            deduct("depth", 0.5, "poucos pontos fracos mapeados")
    elif task == "reels":
        clips = payload.get("clips") or []
        if any(len(clip.get("caption") or "") < 180 for clip in clips):
            deduct("retention_potential", 0.8, "legenda curta")
        if any(_CORTE_TITLE.match(clip.get("title") or "") for clip in clips):
            deduct("originality", 0.7, "titulo generico de corte")
        if any(len(clip.get("whyItWorks") or "") < 110 for clip in clips):
            deduct("depth", 0.8, "justificativa rasa")
    elif task == "newsletter":
        sections = payload.get("sections") or []
        insights = [section for section in sections if section.get("type") == "insight"]
        bullets = [bullet for section in sections if section.get("type") == "application" for bullet in section.get("bullets") or []]
        cta = " ".join(section.get("text") or "" for section in sections if section.get("type") == "cta")
        if len(insights) < 3:
            deduct("depth", 0.8, "poucos insights")
        if len(bullets) < 4:
            deduct("applicability", 0.9, "checklist curto")
        if not _LEAD_INTENT.search(cta):
            deduct("applicability", 0.6, "cta sem intencao de lead")
    elif task == "linkedin":
        body = payload.get("body") or []
        if len(body) < 5:
            deduct("depth", 0.8, "corpo curto")
        if sum(1 for line in body if _PRACTICAL_MARKER.search(line)) < 2:
            deduct("applicability", 0.8, "poucos marcadores praticos")
        if not (payload.get("ctaQuestion") or "").strip().endswith("?"):
            deduct("clarity", 0.4, "cta sem pergunta")
    elif task == "x":
        posts = [*(payload.get("standalone") or []), *(payload.get("thread") or [])]
        thread = payload.get("thread") or []
        if any(len(post) < 90 for post in posts):
            deduct("depth", 0.7, "posts curtos")
        numbered = sum(1 for post in thread if re.match(r"^\s*\d+\s*/", post))
        if numbered < min(3, len(thread)):
            deduct("retention_potential", 0.6, "thread sem numeracao")
        if not any(_ACTION_WORD.search(post) for post in posts):
            deduct("applicability", 0.7, "sem verbo de acao")

    subscores = {key: round_score(clamp(value, 0, 10)) for key, value in subscores.items()}
    overall = round_score(sum(subscores.values()) / len(subscores) - 0.1)
    return QualityEvaluation(
        score=overall,
        subscores=subscores,
        summary=f"Judge indisponivel para {task} ({reason}); fallback rigoroso aplicado com {len(alerts)} alertas",
        weaknesses=[reason, *alerts][:6],
    )


def judge(
    task: str,
    payload: dict[str, Any],
    context: str,
    route: AIRoute,
    gateway: ProviderGateway | None = None,
) -> JudgeResult:
    """Score ``payload`` with the judge route; never raises for provider or parse problems."""
    if route.provider == "heuristic":
        return JudgeResult(
            evaluation=None,
            unavailable_reason="judge_provider_set_heuristic",
            provider=route.provider,
            model=route.model,
        )
    gateway = gateway or get_gateway()
    result = gateway.execute(
        route,
        judge_system_prompt(task),
        judge_user_prompt(task, payload, context),
        task=task,
        kind="judge",
        max_tokens=JUDGE_MAX_TOKENS,
        timeout_s=task_timeout_s(task, "judge"),
    )
    if not result.ok:
        reason = normalize_unavailable_reason(
            "judge_provider_key_missing" if result.kind == "auth_missing" else result.reason
        )
        logger.warning("judge unavailable task=%s provider=%s reason=%s", task, route.provider, reason)
        return JudgeResult(evaluation=None, unavailable_reason=reason, provider=route.provider, model=route.model)

    usage = dict(
        provider=result.provider,
        model=result.model,
        prompt_tokens=result.prompt_tokens,
        completion_tokens=result.completion_tokens,
        total_tokens=result.total_tokens,
        estimated_cost_usd=result.estimated_cost_usd,
        actual_cost_usd=result.actual_cost_usd,
    )
    try:
        data = parse_json_object(result.text)
    except JSONParseError:
        logger.warning("judge returned invalid json task=%s provider=%s", task, route.provider)
        return JudgeResult(evaluation=None, unavailable_reason="judge_invalid_json_response", **usage)
    evaluation = coerce_judge_evaluation(data)
    if evaluation is None:
        return JudgeResult(evaluation=None, unavailable_reason="judge_schema_parse_failed", **usage)
    return JudgeResult(evaluation=evaluation, **usage)

