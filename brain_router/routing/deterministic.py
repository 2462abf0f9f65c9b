"""Deterministic routing gate.

First stage of the pipeline. Costs no LLM call: the prompt is scored
against weighted keyword rubrics, one set per mode, and the winner is
reported together with a confidence value.

Decision order:
1. A caller-forced mode wins with confidence 1.0
2. Context above the long-context threshold forces LONG_CONTEXT
3. Otherwise the highest rubric score wins; the result is certain only
   when the score is high enough and clearly ahead of the runner-up

Confidence bands (defaults):
- 1.0: forced by the caller
- 0.95: long-context threshold exceeded
- [0.6, 0.95]: certain rubric win, growing with the winning margin
- [0.2, 0.6): uncertain; the router may consult the classifier
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

import structlog

from brain_router.config import BrainSettings, get_settings
from brain_router.schemas import ContextStats, OperatingMode

log = structlog.get_logger(__name__)

FORCED_CONFIDENCE = 1.0
LONG_CONTEXT_CONFIDENCE = 0.95
MAX_RUBRIC_CONFIDENCE = 0.95

SHORT_PROMPT_WORDS = 15
SHORT_PROMPT_BONUS = 0.5

# Ties are broken in this order
MODE_PRIORITY: tuple[OperatingMode, ...] = (
    OperatingMode.PLAN,
    OperatingMode.BATCH,
    OperatingMode.CONSULT,
)


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


@dataclass(frozen=True)
class Rubric:
    """A named, weighted group of patterns voting for one mode.

    A rubric contributes its weight once, however many of its patterns match.
    """

    name: str
    mode: OperatingMode
    weight: float
    patterns: tuple[re.Pattern[str], ...]

    def matches(self, prompt: str) -> bool:
        return any(pattern.search(prompt) for pattern in self.patterns)


RUBRICS: tuple[Rubric, ...] = (
    # ---- PLAN ---- #
    Rubric(
        "plan.architecture",
        OperatingMode.PLAN,
        1.5,
        _compile(
            r"\b(refactor|refatorar|restructure|reestruturar|redesign|redesenhar)",
            r"\b(architecture|arquitetura|pipeline)\b",
            r"\bstate[\s-]?machine\b",
            r"\b(schema|data model)\b",
        ),
    ),
    Rubric(
        "plan.rules",
        OperatingMode.PLAN,
        1.5,
        _compile(
            r"\bbusiness\s+rules?\b",
            r"\bregras?\s+de\s+negócio\b",
            r"\b(create|add|define|change|modify|resolve|criar|adicionar|definir|alterar|modificar|mudar)\b.*\b(rules?|regras?)\b",
        ),
    ),
    Rubric(
        "plan.specs",
        OperatingMode.PLAN,
        1.0,
        _compile(
            r"\bflow\s*specs?\b",
            r"\b(generate|create|gerar|criar)\s+(a\s+|an?\s+|novo\s+|new\s+)?(flow)?spec",
            r"\bespecificação\s+(de|do)?\s*fluxo\b",
        ),
    ),
    Rubric(
        "plan.conflicts",
        OperatingMode.PLAN,
        1.5,
        _compile(
            r"conflit|conflict",
            r"inconsisten",
            r"contradi",
            r"\bfix\s+(the\s+)?logic\b",
            r"\bcorrigir\s+(a\s+)?lógica\b",
            r"\bbranch(ing)?\s+(enforcement|issue|problem)\b",
        ),
    ),
    Rubric(
        "plan.planning",
        OperatingMode.PLAN,
        1.0,
        _compile(
            r"\broadmap\b",
            r"\b(migration|migração)\s+plan\b",
            r"\bplano\s+de\s+(migração|migration)\b",
            r"\b(implementation|implementação)\s+(strategy|estratégia)\b",
            r"\bplan(ejar)?\s+(the\s+|o\s+)?(product|produto)\b",
            r"\b(migrate|migrar)\s+(to|from|para|de)\b",
        ),
    ),
    Rubric(
        "plan.destructive",
        OperatingMode.PLAN,
        1.5,
        _compile(
            r"\b(delete|remove|drop)\s+all\b",
            r"\b(deletar|remover|apagar)\s+(todas?|todos?)\b",
        ),
    ),
    Rubric(
        "plan.structured_actions",
        OperatingMode.PLAN,
        1.0,
        _compile(
            r"\bupsert\b",
            r"\bpersist(ir)?\b",
            r"\bupdate\s+(the\s+)?(registry|spec|rule)",
            r"\bcriar\s+(e|ou)\s+salvar\b",
        ),
    ),
    # ---- BATCH ---- #
    Rubric(
        "batch.bulk",
        OperatingMode.BATCH,
        1.5,
        _compile(
            r"\b(for\s+each|every\s+one\s+of|in\s+bulk|em\s+massa|para\s+cada)\b",
            r"\b(generate|create)\s+(multiple|several|many)\b",
            r"\b(gerar|criar)\s+(várias|vários|múltipl)",
            r"\b(extract|extrair)\s+(a\s+)?(list|lista|all|todos|todas)\b",
        ),
    ),
    Rubric(
        "batch.transformations",
        OperatingMode.BATCH,
        1.5,
        _compile(
            r"\b(rewrite|reescrever|normali[sz]e|normalizar|standardi[sz]e|padronizar)\b",
            r"\b(re)?format(ar)?\s+(all|every|todos|todas)\b",
            r"\breformat(ar)?\b",
            r"\b(fix|ajustar)\s+(the\s+|os\s+|as\s+)?labels\b",
        ),
    ),
    Rubric(
        "batch.translations",
        OperatingMode.BATCH,
        1.0,
        _compile(
            r"\b(translate|traduzir)\b",
            r"\b(convert|converter)\s+(\w+\s+)?(to|into|para)\b",
        ),
    ),
    Rubric(
        "batch.generation",
        OperatingMode.BATCH,
        1.0,
        _compile(
            r"\b(generate|gerar)\s+(\w+\s+)?(variations|variants|variações)\b",
            r"\b\d+\s+(variations|variants|versions|variações|versões)\b",
        ),
    ),
    Rubric(
        "batch.repeat",
        OperatingMode.BATCH,
        1.0,
        _compile(
            r"\b(all|every|todos\s+os|todas\s+as)\s+(the\s+)?(labels|descriptions|titles|names|texts|strings|nodes|rótulos|descrições|títulos|nomes|textos)\b",
        ),
    ),
    # ---- CONSULT ---- #
    Rubric(
        "consult.question",
        OperatingMode.CONSULT,
        1.5,
        _compile(
            r"^\s*(what|which|how|where|why|when|who|is|are|does|do|can)\b",
            r"^\s*(o\s+que|qual|quais|como|onde|por\s*que|quando|quem)\b",
        ),
    ),
    Rubric(
        "consult.question_mark",
        OperatingMode.CONSULT,
        1.0,
        _compile(r"\?\s*$"),
    ),
    Rubric(
        "consult.explanation",
        OperatingMode.CONSULT,
        1.0,
        _compile(
            r"\bexplain\b",
            r"\bexplica(r|ção)?\b",
            r"\btell\s+me\s+about\b",
            r"\bme\s+(fala|diz|conta)\b",
            r"\bwhat\s+does\b.*\bmean\b",
            r"\bo\s+que\s+significa\b",
        ),
    ),
    Rubric(
        "consult.lookup",
        OperatingMode.CONSULT,
        0.5,
        _compile(
            r"\b(summary|summari[sz]e|resumo|resumir)\b",
            r"\b(show|list|mostrar|listar)\s+(me\s+)?(the\s+|os\s+|as\s+)?",
        ),
    ),
    Rubric(
        "consult.suggestion",
        OperatingMode.CONSULT,
        1.0,
        _compile(
            r"\b(suggest|suggestion|recommend|recommendation)",
            r"\b(sugest|recomend)",
            r"\bwhat\s+do\s+you\s+think\b",
            r"\bany\s+ideas?\b",
            r"\b(você\s+acha|alguma\s+ideia)\b",
        ),
    ),
)

# Verbs that make a short prompt an instruction rather than a question
_ACTION_VERBS = re.compile(
    r"\b(create|add|change|modify|update|delete|remove|refactor|generate|"
    r"translate|rewrite|migrate|fix|rename|replace|build|define|normali[sz]e|resolve|"
    r"criar|adicionar|alterar|modificar|atualizar|deletar|remover|refatorar|"
    r"gerar|traduzir|reescrever|migrar|corrigir|renomear|substituir|definir|resolver)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class DeterministicResult:
    """Outcome of the deterministic gate.

    Attributes:
        mode: Selected (or best-guess) mode
        confidence: Confidence in [0, 1]
        reason: Human-readable explanation
        uncertain: True when the router may consult the classifier
        scores: Rubric score per mode, for observability
        rules_applied: Ordered names of the rules behind the decision
    """

    mode: OperatingMode
    confidence: float
    reason: str
    uncertain: bool
    scores: dict[str, float] = field(default_factory=dict)
    rules_applied: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be 0.0-1.0, got {self.confidence}")


def score_prompt(
    prompt: str,
    rubrics: Iterable[Rubric] = RUBRICS,
) -> tuple[dict[OperatingMode, float], list[str]]:
    """Score a prompt against the rubrics.

    Returns:
        (score per mode, names of the rubrics that matched, in rubric order)
    """
    scores = {mode: 0.0 for mode in MODE_PRIORITY}
    matched: list[str] = []
    for rubric in rubrics:
        if rubric.matches(prompt):
            scores[rubric.mode] += rubric.weight
            matched.append(rubric.name)

    if len(prompt.split()) <= SHORT_PROMPT_WORDS and not _ACTION_VERBS.search(prompt):
        scores[OperatingMode.CONSULT] += SHORT_PROMPT_BONUS
        matched.append("consult.short_prompt")
    return scores, matched


def _rank_modes(scores: dict[OperatingMode, float]) -> list[OperatingMode]:
    return sorted(MODE_PRIORITY, key=lambda mode: (-scores[mode], MODE_PRIORITY.index(mode)))


def route_deterministic(
    prompt: str,
    stats: ContextStats,
    forced_mode: OperatingMode | str | None = None,
    settings: BrainSettings | None = None,
) -> DeterministicResult:
    """Run the deterministic gate.

    Args:
        prompt: User prompt
        stats: Context statistics for the request
        forced_mode: Mode requested by the caller, bypassing all rules
        settings: Thresholds to apply. Defaults to get_settings().

    Returns:
        DeterministicResult
    """
    settings = settings or get_settings()

    if forced_mode is not None:
        return DeterministicResult(
            mode=OperatingMode(forced_mode),
            confidence=FORCED_CONFIDENCE,
            reason="forced by caller",
            uncertain=False,
            rules_applied=("forced_mode",),
        )

    threshold = settings.long_context_threshold
    if stats.is_long_context or stats.total_tokens > threshold:
        return DeterministicResult(
            mode=OperatingMode.LONG_CONTEXT,
            confidence=LONG_CONTEXT_CONFIDENCE,
            reason=(
                f"context too large ({stats.total_tokens:,} tokens, "
                f"threshold {threshold:,})"
            ),
            uncertain=False,
            rules_applied=("context_tokens_exceeded_threshold",),
        )

    scores, matched = score_prompt(prompt)
    ranked = _rank_modes(scores)
    top, runner_up = ranked[0], ranked[1]
    top_score = scores[top]
    margin = top_score - scores[runner_up]
    score_view = {mode.value: score for mode, score in scores.items()}
    log.debug("deterministic.scored", scores=score_view, matched=matched, margin=margin)
    band_min = settings.uncertainty_band_min
    band_max = settings.uncertainty_band_max

    if top_score <= 0.0:
        return DeterministicResult(
            mode=OperatingMode.CONSULT,
            confidence=band_min,
            reason="no clear pattern; defaulting to CONSULT",
            uncertain=True,
            scores=score_view,
            rules_applied=("no_clear_pattern",),
        )

    winning_rules = tuple(name for name in matched if name.startswith(top.value.lower()))

    if top_score >= settings.min_rubric_score and margin >= settings.dominance_margin:
        ceiling = max(band_max, MAX_RUBRIC_CONFIDENCE)
        confidence = band_max + (ceiling - band_max) * min(1.0, 0.5 + margin / 6.0)
        return DeterministicResult(
            mode=top,
            confidence=round(confidence, 4),
            reason=f"{top.value} patterns matched ({', '.join(winning_rules)})",
            uncertain=False,
            scores=score_view,
            rules_applied=(*winning_rules, "dominant_score"),
        )

    if settings.dominance_margin > 0:
        lead = min(1.0, margin / settings.dominance_margin)
    else:
        lead = 1.0
    confidence = band_min + (band_max - band_min) * 0.5 * lead
    return DeterministicResult(
        mode=top,
        confidence=round(confidence, 4),
        reason=(
            f"ambiguous patterns; best guess {top.value} "
            f"(score {top_score:g}, lead {margin:g})"
        ),
        uncertain=True,
        scores=score_view,
        rules_applied=(*winning_rules, "ambiguous_scores"),
    )


# ------------------------------------------------------------------ #
# Request signals
# ------------------------------------------------------------------ #

_HIGH_COMPLEXITY_WORDS = _compile(
    r"\bmúltipl(os|as|o|a)\b",
    r"\bmultiple\b",
    r"\bcomplex(o|a)?\b",
    r"\b(todos\s+os|todas\s+as)\b",
    r"\ball\s+(the\s+)?\w+",
    r"\bintegra(r|ção|tion)\b",
    r"\b(migrate|migration|migrar|migração)\b",
    r"\b(refactor|refatorar)",
)

_STRUCTURED_OUTPUT_PATTERNS = _compile(
    r"\bjson\b",
    r"\bestruturad(o|a)\b",
    r"\bstructured\b",
    r"\blista\s+(de|com)\b",
    r"\blist\s+(of|with)\b",
    r"\b(tabela|table)\b",
    r"\b(gerar|generate)\s+(o\s+|the\s+|a\s+)?(arquivo|file)\b",
)

_TOOL_USE_PATTERNS = _compile(
    r"\bbuscar\s+(no|na|do|da)?\s*(banco|database|db)\b",
    r"\bsearch\s+(the\s+)?(database|db)\b",
    r"\bconsultar\s+(o\s+)?(registry|spec|rule)",
    r"\bquery\b",
    r"\bfetch\b",
    r"\bverificar\s+(se\s+)?(\w+\s+){0,3}(existe|exists)\b",
    r"\bcheck\s+(if\s+)?(\w+\s+){0,3}exists\b",
)


def estimate_complexity(prompt: str, plan_rubrics_matched: int = 0) -> float:
    """Heuristic complexity in [0, 1], starting from 0.5."""
    complexity = 0.5
    complexity += 0.1 * sum(1 for pattern in _HIGH_COMPLEXITY_WORDS if pattern.search(prompt))

    word_count = len(prompt.split())
    if word_count > 50:
        complexity += 0.15
    if word_count > 100:
        complexity += 0.15
    if plan_rubrics_matched >= 3:
        complexity += 0.2
    return round(min(1.0, max(0.0, complexity)), 4)


def requires_structured_output(prompt: str, mode: OperatingMode) -> bool:
    if mode in (OperatingMode.PLAN, OperatingMode.BATCH, OperatingMode.LONG_CONTEXT):
        return True
    return any(pattern.search(prompt) for pattern in _STRUCTURED_OUTPUT_PATTERNS)


def needs_tool_use(prompt: str) -> bool:
    return any(pattern.search(prompt) for pattern in _TOOL_USE_PATTERNS)
