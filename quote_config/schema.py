"""
KernelConfig schema.

The loaded, validated configuration artifact.  The policy values it
carries are the kernel's own frozen ``QuotePolicy`` dataclasses, so
services never see YAML or raw dicts.
"""

from __future__ import annotations

from dataclasses import dataclass

from quote_kernel.domain.policy import QuotePolicy


@dataclass(frozen=True)
class KernelConfig:
    """A validated configuration set."""

    config_id: str
    version: int
    checksum: str
    policy: QuotePolicy
    description: str = ""
    source_path: str | None = None

    @property
    def tokens(self):
        return self.policy.tokens

    @property
    def portal(self):
        return self.policy.portal

    @property
    def billing(self):
        return self.policy.billing

    @property
    def pricing(self):
        return self.policy.pricing
