"""
评分服务

根据评分细则调用 LLM 对识别文本评分，并将自由文本响应恢复为结构化结果。

缓存策略：只有结果可复现时才缓存，即温度不高于 grading_cache_max_temperature，
或调用方提供了 seed（seed 计入缓存键）。
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx

from correcte.config.providers import GradingConfig, GradingProvider
from correcte.config.settings import PipelineSettings, get_pipeline_settings
from correcte.models.enums import GradedBy
from correcte.models.rubric import Rubric
from correcte.models.submission import CriterionScore, GradeResult, utc_now
from correcte.services.cache import TwoTierCache
from correcte.services.errors import InvalidInput, MalformedResponse, ProviderRejected
from correcte.utils.hashing import stable_key, text_hash
from correcte.utils.json_recovery import recover_json_object
from correcte.utils.retry import RetryConfig, with_retry

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "Tu es un assistant de correction pour les enseignants. "
    "Tu évalues le travail d'un élève uniquement à partir des critères fournis "
    "et tu réponds exclusivement en JSON."
)

GRADING_PROMPT_TEMPLATE = """Travail de l'élève :
{student_work}

Critères d'évaluation (barème total : {max_score} points) :
{criteria}

{instructions}Rédige les commentaires en {language}.
Réponds avec un unique objet JSON de la forme :
{{
  "score": <note totale sur {max_score}>,
  "feedback": "<commentaire général>",
  "criteria": [
    {{"criterion_id": "<identifiant du critère>", "score": <note>, "feedback": "<commentaire>"}}
  ],
  "strengths": ["<point fort>"],
  "improvements": ["<piste d'amélioration>"]
}}
"""


@dataclass
class GradingRequest:
    """一次评分请求"""
    text: str
    rubric: Rubric
    temperature: float
    seed: Optional[int] = None
    instructions: str = ""


@dataclass
class GraderResponse:
    content: str
    model: str


class RubricGrader(Protocol):
    """评分能力接口：返回模型原始文本"""

    name: str
    model: str

    async def complete(self, request: GradingRequest) -> GraderResponse:
        ...


def format_criteria(rubric: Rubric) -> str:
    lines: List[str] = []
    for criterion in rubric.criteria:
        line = f"- [{criterion.criterion_id}] {criterion.name} ({criterion.max_score:g} pts)"
        if criterion.description:
            line += f" : {criterion.description}"
        lines.append(line)
        for level in criterion.levels:
            lines.append(f"    * {level.label} ({level.score:g}) {level.description}".rstrip())
    return "\n".join(lines)


def build_grading_prompt(request: GradingRequest, language: str) -> str:
    instructions = f"Consignes supplémentaires :\n{request.instructions}\n\n" if request.instructions else ""
    return GRADING_PROMPT_TEMPLATE.format(
        student_work=request.text,
        max_score=f"{request.rubric.max_score():g}",
        criteria=format_criteria(request.rubric),
        instructions=instructions,
        language=language,
    )


class OpenAICompatibleGrader:
    """OpenAI / OpenRouter 兼容的 chat completions 评分器"""

    name = "openai_compatible"

    def __init__(self, config: GradingConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.model = config.model
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=120.0)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def build_payload(self, request: GradingRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_grading_prompt(request, self.config.language)},
            ],
            "temperature": request.temperature,
            "max_tokens": self.config.max_tokens,
        }
        if request.seed is not None:
            payload["seed"] = request.seed
        return payload

    async def complete(self, request: GradingRequest) -> GraderResponse:
        client = await self._get_client()
        response = await client.post(
            f"{self.config.base_url}/chat/completions",
            json=self.build_payload(request),
            headers=self.config.get_headers(),
        )
        response.raise_for_status()

        try:
            data = response.json()
            choice = data["choices"][0]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise MalformedResponse(f"响应结构无效: {e}", provider=self.name) from e

        if choice.get("finish_reason") == "content_filter":
            raise ProviderRejected("内容被提供商策略拦截", provider=self.name)

        content = (choice.get("message") or {}).get("content")
        if not isinstance(content, str) or not content.strip():
            raise MalformedResponse("响应内容为空", provider=self.name)
        return GraderResponse(content=content, model=data.get("model") or self.config.model)


def create_grader(config: GradingConfig, client: Optional[httpx.AsyncClient] = None) -> RubricGrader:
    """按配置创建评分器"""
    if config.provider == GradingProvider.OPENAI_COMPATIBLE:
        return OpenAICompatibleGrader(config, client=client)
    raise ValueError(f"不支持的评分提供商: {config.provider}")


def _as_float(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise MalformedResponse(f"字段 {field_name} 不是数值: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise MalformedResponse(f"字段 {field_name} 不是数值: {value!r}") from e


def _as_str_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(item) for item in value if item]
    if isinstance(value, str) and value:
        return [value]
    return []


def parse_grade(parsed: Dict[str, Any], rubric: Rubric, model: Optional[str]) -> GradeResult:
    """
    将恢复出的 JSON 对象转换为 GradeResult

    兼容 criteria / criterion_scores / criteriaEvaluations 等字段命名；
    分数被限制在 [0, 满分] 区间内。

    Raises:
        MalformedResponse: 缺少总分或分数不是数值
    """
    raw_score = parsed.get("score", parsed.get("total_score"))
    if raw_score is None:
        raise MalformedResponse("响应缺少 score 字段")

    max_score = rubric.max_score() or _as_float(parsed.get("max_score", 100), "max_score")
    score = min(max(_as_float(raw_score, "score"), 0.0), max_score)

    by_id = {c.criterion_id: c for c in rubric.criteria}
    by_name = {c.name.strip().lower(): c for c in rubric.criteria}

    criterion_scores: List[CriterionScore] = []
    raw_criteria = parsed.get("criteria") or parsed.get("criterion_scores") or parsed.get("criteriaEvaluations") or []
    for item in raw_criteria if isinstance(raw_criteria, list) else []:
        if not isinstance(item, dict):
            continue
        key = item.get("criterion_id") or item.get("criteriaId") or item.get("id")
        criterion = by_id.get(str(key)) if key is not None else None
        if criterion is None:
            name = item.get("name") or item.get("criteriaName") or ""
            criterion = by_name.get(str(name).strip().lower())
        if criterion is None:
            logger.debug(f"[GradingService] 忽略未知评分项: {item}")
            continue
        item_score = min(max(_as_float(item.get("score", 0), "criteria.score"), 0.0), criterion.max_score)
        criterion_scores.append(
            CriterionScore(
                criterion_id=criterion.criterion_id,
                score=item_score,
                max_score=criterion.max_score,
                feedback=str(item.get("feedback") or ""),
            )
        )

    return GradeResult(
        score=score,
        max_score=max_score,
        criterion_scores=criterion_scores,
        feedback=str(parsed.get("feedback") or ""),
        strengths=_as_str_list(parsed.get("strengths")),
        improvements=_as_str_list(parsed.get("improvements") or parsed.get("improvementSuggestions")),
        graded_by=GradedBy.AI,
        model=model,
        graded_at=utc_now(),
    )


@dataclass
class GradingOutcome:
    grade: GradeResult
    duration_ms: int
    cached: bool


class GradingService:
    """评分服务：缓存（按策略）→ 调用评分器（带重试与超时）→ 恢复结构化结果"""

    def __init__(
        self,
        grader: RubricGrader,
        cache: Optional[TwoTierCache] = None,
        settings: Optional[PipelineSettings] = None,
        temperature: float = 0.2,
        seed: Optional[int] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.grader = grader
        self.cache = cache
        self.settings = settings or get_pipeline_settings()
        self.temperature = temperature
        self.seed = seed
        self.retry_config = retry_config or RetryConfig(
            initial_interval=self.settings.provider_initial_backoff_seconds,
            maximum_attempts=self.settings.provider_max_attempts,
            maximum_interval=30.0,
            timeout=self.settings.provider_timeout_seconds,
            quota_interval=self.settings.provider_quota_backoff_seconds,
        )

    @classmethod
    def from_config(
        cls,
        config: GradingConfig,
        cache: Optional[TwoTierCache] = None,
        settings: Optional[PipelineSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "GradingService":
        return cls(
            create_grader(config, client=client),
            cache=cache,
            settings=settings,
            temperature=config.temperature,
            seed=config.seed,
        )

    def cache_allowed(self, temperature: float, seed: Optional[int]) -> bool:
        return seed is not None or temperature <= self.settings.grading_cache_max_temperature

    def cache_key(self, text: str, rubric: Rubric, temperature: float, seed: Optional[int]) -> str:
        return "grading:" + stable_key(
            text_hash(text),
            rubric.content_hash(),
            self.grader.name,
            self.grader.model,
            round(temperature, 3),
            seed,
        )

    async def grade(
        self,
        text: str,
        rubric: Rubric,
        instructions: str = "",
        temperature: Optional[float] = None,
        seed: Optional[int] = None,
    ) -> GradingOutcome:
        """
        对文本评分

        Raises:
            InvalidInput: 文本为空或细则无评分项
            MalformedResponse: 响应无法恢复为有效 JSON
            PipelineError: 提供商调用失败（已归类）
        """
        if not text or not text.strip():
            raise InvalidInput("待评分文本为空")
        if not rubric.criteria:
            raise InvalidInput(f"评分细则没有评分项: {rubric.rubric_id}")

        temperature = self.temperature if temperature is None else temperature
        seed = self.seed if seed is None else seed
        started = time.monotonic()

        use_cache = self.cache is not None and self.cache_allowed(temperature, seed)
        key = self.cache_key(text, rubric, temperature, seed) if use_cache else None

        if use_cache:
            cached = await self.cache.get(key)
            if cached is not None:
                logger.debug(f"[GradingService] 缓存命中: rubric={rubric.rubric_id}")
                return GradingOutcome(
                    grade=GradeResult.model_validate(cached),
                    duration_ms=int((time.monotonic() - started) * 1000),
                    cached=True,
                )

        request = GradingRequest(text=text, rubric=rubric, temperature=temperature, seed=seed, instructions=instructions)
        response = await with_retry(self.grader.complete, self.retry_config, request, provider=self.grader.name)

        parsed = recover_json_object(response.content)
        if parsed is None:
            preview = json.dumps(response.content[:200], ensure_ascii=False)
            raise MalformedResponse(f"无法从响应中恢复 JSON: {preview}", provider=self.grader.name)

        grade = parse_grade(parsed, rubric, response.model)
        if use_cache:
            await self.cache.set(key, grade.model_dump(mode="json"), self.settings.grading_cache_ttl_seconds)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"[GradingService] 评分完成: rubric={rubric.rubric_id}, score={grade.score:g}/{grade.max_score:g}, "
            f"model={response.model}, duration={duration_ms}ms"
        )
        return GradingOutcome(grade=grade, duration_ms=duration_ms, cached=False)
