import math

from bulk_seo.config import settings


class PolicyViolation(RuntimeError):
    pass


PLANS = {
    "starter": {
        "name": "Starter",
        "language_limit": 1,
        "vendors": ["deepseek", "llama", "gemini"],
    },
    "professional": {
        "name": "Professional",
        "language_limit": 2,
        "vendors": ["openai", "llama", "deepseek", "gemini"],
    },
    "growth": {
        "name": "Growth",
        "language_limit": 3,
        "vendors": ["claude", "openai", "gemini"],
    },
    "growth extra": {
        "name": "Growth Extra",
        "language_limit": 6,
        "vendors": ["claude", "openai", "gemini", "llama"],
    },
    "enterprise": {
        "name": "Enterprise",
        "language_limit": 10,
        "vendors": ["claude", "openai", "gemini", "deepseek", "llama"],
    },
}

# Estimated provider tokens per feature; the first language costs `base`,
# every further language in the same call costs `per_language`.
TOKEN_COSTS = {
    "bulk-generate": {"base": 1000, "per_language": 800},
    "ai-validation": {"base": 50, "per_language": 0},
    "ai-seo-product-enhanced": {"base": 2000, "per_language": 1500},
}


def _normalize(plan: str | None) -> str:
    key = str(plan or "").lower().strip().replace("_", " ")
    return "growth extra" if key == "growthextra" else key


def is_known_plan(plan: str | None) -> bool:
    return _normalize(plan) in PLANS


def resolve_plan_key(plan: str | None) -> str:
    key = _normalize(plan)
    if key in PLANS:
        return key
    return settings.default_plan


def language_limit(plan: str | None) -> int:
    return int(PLANS[resolve_plan_key(plan)]["language_limit"])


def vendor_from_model(model: str) -> str:
    vendor = str(model or "").split("/")[0].lower()
    if vendor == "anthropic":
        return "claude"
    if vendor == "google":
        return "gemini"
    if vendor in {"meta-llama", "meta"}:
        return "llama"
    return vendor


def check_model_allowed(plan: str | None, model: str) -> None:
    key = resolve_plan_key(plan)
    vendor = vendor_from_model(model)
    if vendor not in PLANS[key]["vendors"]:
        raise PolicyViolation(f"Model vendor '{vendor}' not allowed for plan {PLANS[key]['name']}")


def check_language_limit(plan: str | None, existing: list[str], to_generate: list[str]) -> None:
    limit = language_limit(plan)
    if len(existing) + len(to_generate) > limit:
        raise PolicyViolation(
            f"language_limit_exceeded: {len(existing) + len(to_generate)} languages, plan allows {limit}"
        )


def feature_cost(feature: str, languages: int = 1) -> int:
    cost = TOKEN_COSTS.get(feature)
    if cost is None:
        raise ValueError(f"Unknown feature: {feature}")
    total = cost["base"]
    if languages > 1:
        total += (languages - 1) * cost["per_language"]
    return total


def estimate_unit_tokens(feature: str = "bulk-generate") -> int:
    """Tokens held for one (product, language) generation, margin included."""
    return math.ceil(feature_cost(feature, 1) * (1 + settings.token_safety_margin))
