"""Token cost estimation for reasoning engine calls."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


def estimate_cost_usd(
    *,
    pricing: str,
    model: str,
    prompt_tokens: int | None,
    completion_tokens: int | None,
) -> float | None:
    """Estimate call cost in USD from token usage and a pricing mapping string."""

    model_pricing = lookup_pricing(pricing=pricing, model=model)
    if model_pricing is None:
        return None
    if prompt_tokens is None and completion_tokens is None:
        return None
    return ((prompt_tokens or 0) / 1_000_000) * model_pricing.input_per_1m + (
        (completion_tokens or 0) / 1_000_000
    ) * model_pricing.output_per_1m


def lookup_pricing(*, pricing: str, model: str) -> ModelPricing | None:
    mapping = parse_pricing_mapping(pricing)
    direct = mapping.get(model.strip())
    if direct is not None:
        return direct
    return mapping.get("*")


def parse_pricing_mapping(raw: str) -> dict[str, ModelPricing]:
    """Parse `AGENT_TEAMS_ENGINE_PRICING`.

    Format:
    - `model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - `*` as model matches any model without its own entry

    Malformed entries are skipped.
    """

    parsed: dict[str, ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.rsplit(":", 2)]
        if len(parts) != 3 or not parts[0]:
            continue
        model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        if input_per_1m < 0 or output_per_1m < 0:
            continue
        parsed[model] = ModelPricing(input_per_1m=input_per_1m, output_per_1m=output_per_1m)
    return parsed
