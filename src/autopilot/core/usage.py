"""Provider usage snapshots consulted by the budget governor."""

from abc import ABC, abstractmethod
from typing import List

from pydantic import BaseModel, Field


class UsageWindow(BaseModel):
    """One rate-limit window of a provider (e.g. 5-hour, weekly)."""
    label: str = ""
    used_percent: float = 0.0


class ProviderUsage(BaseModel):
    provider: str = ""
    windows: List[UsageWindow] = Field(default_factory=list)


class UsageSummary(BaseModel):
    providers: List[ProviderUsage] = Field(default_factory=list)


class UsageSummarySource(ABC):
    @abstractmethod
    async def load_usage_summary(self) -> UsageSummary:
        pass


class NullUsageSource(UsageSummarySource):
    """No provider data; the provider check always passes."""

    async def load_usage_summary(self) -> UsageSummary:
        return UsageSummary()
