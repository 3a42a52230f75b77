"""Load and validate the cleaning knowledge base.

The YAML file is parsed with ``yaml.safe_load`` and validated by Pydantic.
The result is cached for the life of the process; call
:func:`reload_knowledge_base` after editing the file on disk.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from concierge.errors import KnowledgeBaseError

logger = logging.getLogger(__name__)

KB_PATH = Path(__file__).resolve().parent / "cleaning.yml"
DOCS_DIR = Path(__file__).resolve().parent / "docs"


class BusinessHours(BaseModel):
    weekdays: str = Field(min_length=1)
    weekends: str = Field(min_length=1)


class Company(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    currency: str = Field(min_length=1)
    service_areas: list[str] = Field(alias="serviceAreas", min_length=1)
    hours: BusinessHours


class FrequencyDiscounts(BaseModel):
    one_time: float = Field(gt=0)
    weekly: float = Field(gt=0)
    biweekly: float = Field(gt=0)
    monthly: float = Field(gt=0)


class Pricing(BaseModel):
    base_visit_fee: float = Field(ge=0)
    per_room: float = Field(ge=0)
    per_bath: float = Field(ge=0)
    per_sqm: float = Field(ge=0)
    deep_clean_multiplier: float = Field(gt=0)
    frequency_discounts: FrequencyDiscounts


class Addons(BaseModel):
    inside_oven: float = Field(ge=0)
    inside_fridge: float = Field(ge=0)
    windows_per_room: float = Field(ge=0)


class Policies(BaseModel):
    cancellation: str = Field(min_length=1)
    supplies: str = Field(min_length=1)


class KnowledgeBase(BaseModel):
    company: Company
    pricing: Pricing
    addons: Addons
    policies: Policies


_cache: KnowledgeBase | None = None
_lock = threading.Lock()


def _load_from_disk(path: Path = KB_PATH) -> KnowledgeBase:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise KnowledgeBaseError(f"Knowledge base not found at {path}") from exc
    except yaml.YAMLError as exc:
        raise KnowledgeBaseError(f"Knowledge base is not valid YAML: {exc}") from exc

    try:
        kb = KnowledgeBase.model_validate(raw)
    except ValidationError as exc:
        issues = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'root'}: {err['msg']}"
            for err in exc.errors()
        )
        raise KnowledgeBaseError(f"Failed to load knowledge base: {issues}") from exc

    logger.info("Knowledge base loaded from %s (%d service areas)",
                path.name, len(kb.company.service_areas))
    return kb


def get_knowledge_base() -> KnowledgeBase:
    """Return the cached knowledge base, loading it on first use."""
    global _cache
    with _lock:
        if _cache is None:
            _cache = _load_from_disk()
        return _cache


def reload_knowledge_base() -> KnowledgeBase:
    """Re-read ``cleaning.yml`` so edits apply without a restart."""
    global _cache
    with _lock:
        _cache = _load_from_disk()
        return _cache
