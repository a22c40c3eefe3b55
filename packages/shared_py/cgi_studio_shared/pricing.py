from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

CREDITS_PER_CONTENT_TYPE = {
    'image': 2,
    'video': 10,
}

PRIORITY_PER_CONTENT_TYPE = {
    'image': 1,
    'video': 2,
}

# Provider cost per call. The unit is 1/1000 USD.
STAGE_COSTS_MILLICENTS = {
    'prompt_enhancement': 2,
    'image_generation': 39,
    'video_analysis': 3,
    'video_generation': 260,
}

ALLOWED_VIDEO_DURATIONS = (5, 10)
DEFAULT_VIDEO_DURATION = 5


@dataclass(frozen=True)
class CreditPackage:
    package_id: str
    name: str
    credits: int
    price_cents: int


CREDIT_PACKAGES = {
    'tester': CreditPackage('tester', 'Tester', 100, 1000),
    'starter': CreditPackage('starter', 'Starter', 250, 2500),
    'pro': CreditPackage('pro', 'Pro', 550, 5000),
    'business': CreditPackage('business', 'Business', 1200, 10000),
}


def credits_for_content_type(content_type: str) -> int:
    try:
        return CREDITS_PER_CONTENT_TYPE[content_type]
    except KeyError as exc:
        raise ValueError('unsupported_content_type') from exc


def priority_for_content_type(content_type: str) -> int:
    return PRIORITY_PER_CONTENT_TYPE.get(content_type, 0)


def stage_cost(stage: str) -> int:
    return STAGE_COSTS_MILLICENTS[stage]


def millicents_to_usd(millicents: int) -> Decimal:
    return (Decimal(int(millicents or 0)) / Decimal(1000)).quantize(Decimal('0.0001'))


def get_package(package_id: str) -> CreditPackage | None:
    return CREDIT_PACKAGES.get(str(package_id or '').strip().lower())
