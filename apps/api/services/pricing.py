"""Credit pricing matrix and pure cost calculation."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_CEILING, Decimal
from enum import Enum
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from config import settings

logger = logging.getLogger(__name__)

CREDIT_INCREMENT = Decimal("0.01")

Quantity = Union[int, float, Decimal]


class ServiceType(str, Enum):
    MARKETPLACE = "marketplace"
    FACEBOOK_POSTS = "facebook_posts"
    FACEBOOK_PAGES = "facebook_pages"
    FACEBOOK_PAGES_BENCHMARK = "facebook_pages_benchmark"
    FACEBOOK_PAGES_CALENDAR = "facebook_pages_calendar"
    FACEBOOK_PAGES_COPYWRITING = "facebook_pages_copywriting"
    COMMENTS = "comments"
    AI_ANALYSIS = "ai_analysis"
    BENCHMARK = "benchmark"
    MENTION_ANALYSIS = "mention_analysis"

    @property
    def rule(self) -> "PricingRule":
        return COST_MATRIX[_RULE_ALIASES.get(self, self)]

    @property
    def is_ai_driven(self) -> bool:
        return bool(self.rule.model_scaled)


@dataclass(frozen=True)
class PricingRule:
    """Unit rates for one service, keyed by quantity field."""

    description: str
    rates: Dict[str, Decimal]
    labels: Dict[str, str]
    # Quantity fields the model multiplier applies to.
    model_scaled: Tuple[str, ...] = ()
    # Quantities charged even when the request omits them.
    default_quantities: Dict[str, int] = field(default_factory=dict)


def _rates(**values: str) -> Dict[str, Decimal]:
    return {key: Decimal(value) for key, value in values.items()}


COST_MATRIX: Dict[ServiceType, PricingRule] = {
    ServiceType.MARKETPLACE: PricingRule(
        description="Marketplace extraction",
        rates=_rates(items="0.5"),
        labels={"items": "Marketplace items"},
    ),
    ServiceType.FACEBOOK_PAGES: PricingRule(
        description="Facebook Pages extraction",
        rates=_rates(pages="0.5", posts="0.1"),
        labels={"pages": "Facebook pages", "posts": "Posts"},
    ),
    ServiceType.FACEBOOK_POSTS: PricingRule(
        description="Facebook posts extraction",
        rates=_rates(posts="0.5"),
        labels={"posts": "Facebook posts"},
    ),
    ServiceType.COMMENTS: PricingRule(
        description="Comments extraction",
        rates=_rates(posts="0.1", comments="0.02"),
        labels={"posts": "Posts scanned", "comments": "Comments"},
    ),
    ServiceType.AI_ANALYSIS: PricingRule(
        description="AI analysis",
        rates=_rates(pages="2", posts="0.05"),
        labels={"pages": "Pages analysed", "posts": "Posts analysed"},
        model_scaled=("pages", "posts"),
    ),
    ServiceType.BENCHMARK: PricingRule(
        description="Competitor benchmark",
        rates=_rates(pages="2", posts="0.1", ai_analysis="3", report_generation="1"),
        labels={
            "pages": "Pages scraped",
            "posts": "Posts analysed",
            "ai_analysis": "Comparative AI analysis",
            "report_generation": "Report generation",
        },
        model_scaled=("ai_analysis",),
        default_quantities={"ai_analysis": 1, "report_generation": 1},
    ),
    ServiceType.MENTION_ANALYSIS: PricingRule(
        description="Mention detection",
        rates=_rates(mentions="0.05", keywords="0.1"),
        labels={"mentions": "Mentions", "keywords": "Keywords"},
    ),
}

# Page-level agents bill at the plain Facebook Pages rates.
_RULE_ALIASES = {
    ServiceType.FACEBOOK_PAGES_BENCHMARK: ServiceType.FACEBOOK_PAGES,
    ServiceType.FACEBOOK_PAGES_CALENDAR: ServiceType.FACEBOOK_PAGES,
    ServiceType.FACEBOOK_PAGES_COPYWRITING: ServiceType.FACEBOOK_PAGES,
}

DEFAULT_SERVICE_TYPE = ServiceType.MARKETPLACE


@dataclass(frozen=True)
class AIModel:
    id: str
    name: str
    provider: str
    cost_multiplier: Decimal
    context_window: int
    default: bool = False


AI_MODELS: Tuple[AIModel, ...] = (
    AIModel("google/gemini-2.5-flash", "Gemini 2.5 Flash", "Google", Decimal("1.0"), 1_000_000, default=True),
    AIModel("openai/gpt-4o-mini", "GPT-4o Mini", "OpenAI", Decimal("1.5"), 128_000),
    AIModel("google/gemini-2.5-pro", "Gemini 2.5 Pro", "Google", Decimal("3.0"), 2_000_000),
    AIModel("openai/gpt-4o", "GPT-4o", "OpenAI", Decimal("5.0"), 128_000),
    AIModel("anthropic/claude-3.5-sonnet", "Claude 3.5 Sonnet", "Anthropic", Decimal("8.0"), 200_000),
)


def get_ai_model(model_id: Optional[str]) -> Optional[AIModel]:
    for model in AI_MODELS:
        if model.id == model_id:
            return model
    return None


def get_default_ai_model() -> AIModel:
    configured = get_ai_model(settings.DEFAULT_AI_MODEL)
    if configured:
        return configured
    return next((model for model in AI_MODELS if model.default), AI_MODELS[0])


def get_model_cost_multiplier(model_id: Optional[str]) -> Decimal:
    """Return the model's multiplier, or 1 when the model is unknown."""
    if not model_id:
        return Decimal("1")
    model = get_ai_model(model_id)
    if model is None:
        logger.warning("Unknown AI model %s, pricing at base rate", model_id)
        return Decimal("1")
    return model.cost_multiplier


def list_models() -> List[Dict[str, Any]]:
    return [
        {
            "id": model.id,
            "name": model.name,
            "provider": model.provider,
            "cost_multiplier": float(model.cost_multiplier),
            "default": model.id == get_default_ai_model().id,
        }
        for model in AI_MODELS
    ]


def coerce_service_type(value: Union[str, ServiceType]) -> ServiceType:
    """Resolve a raw service tag, falling back to the default rate when unknown."""
    if isinstance(value, ServiceType):
        return value
    try:
        return ServiceType(str(value).strip())
    except ValueError:
        logger.warning("Unknown service type %r, pricing with %s rates", value, DEFAULT_SERVICE_TYPE.value)
        return DEFAULT_SERVICE_TYPE


def describe_service(service_type: Union[str, ServiceType]) -> str:
    return coerce_service_type(service_type).rule.description


def round_credits(amount: Decimal) -> Decimal:
    """Round up to the smallest credit increment so usage is never under-charged."""
    return Decimal(amount).quantize(CREDIT_INCREMENT, rounding=ROUND_CEILING)


@dataclass
class CostLineItem:
    label: str
    quantity: Decimal
    unit_cost: Decimal
    subtotal: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "quantity": float(self.quantity),
            "unit_cost": float(self.unit_cost),
            "subtotal": float(self.subtotal),
        }


@dataclass
class CostEstimate:
    service_type: ServiceType
    total_cost: Decimal
    breakdown: List[CostLineItem]
    model_id: Optional[str] = None
    multiplier: Decimal = Decimal("1")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_type": self.service_type.value,
            "description": self.service_type.rule.description,
            "total_cost": float(self.total_cost),
            "model_id": self.model_id,
            "multiplier": float(self.multiplier),
            "breakdown": [item.to_dict() for item in self.breakdown],
        }


def _resolve_quantities(rule: PricingRule, quantities: Mapping[str, Quantity]) -> Dict[str, Decimal]:
    resolved: Dict[str, Decimal] = {}
    for key in rule.rates:
        raw = quantities.get(key, rule.default_quantities.get(key, 0))
        value = Decimal(str(raw or 0))
        if value < 0:
            raise ValueError(f"{key} must be >= 0")
        resolved[key] = value
    return resolved


def estimate_cost(
    service_type: Union[str, ServiceType],
    quantities: Mapping[str, Quantity],
    model_id: Optional[str] = None,
) -> CostEstimate:
    """Price a request and return the line-item breakdown."""
    resolved_type = coerce_service_type(service_type)
    rule = resolved_type.rule
    multiplier = get_model_cost_multiplier(model_id) if rule.model_scaled else Decimal("1")

    breakdown: List[CostLineItem] = []
    for key, quantity in _resolve_quantities(rule, quantities).items():
        if quantity == 0:
            continue
        unit_cost = rule.rates[key]
        label = rule.labels.get(key, key)
        if key in rule.model_scaled and multiplier != 1:
            unit_cost = unit_cost * multiplier
            label = f"{label} (x{multiplier.normalize()})"
        breakdown.append(
            CostLineItem(label=label, quantity=quantity, unit_cost=unit_cost, subtotal=unit_cost * quantity)
        )

    total = round_credits(sum((item.subtotal for item in breakdown), Decimal("0")))
    return CostEstimate(
        service_type=resolved_type,
        total_cost=total,
        breakdown=breakdown,
        model_id=model_id if rule.model_scaled else None,
        multiplier=multiplier,
    )


def compute_cost(
    service_type: Union[str, ServiceType],
    quantities: Mapping[str, Quantity],
    model_id: Optional[str] = None,
) -> Decimal:
    """Return the credit cost for a request. Pure: reads only the pricing tables."""
    return estimate_cost(service_type, quantities, model_id=model_id).total_cost
