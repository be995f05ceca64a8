"""Closed per-module configuration records for compliance feature gating.

Each compliance module (GDPR, AI Act, NIS2, ISO 27001, SOC 2, HIPAA) has a
fixed record type: an `enabled` flag plus a fixed set of named feature flags.
`ModuleConfigMap` groups all six and is what the `module_config` JSONB column
stores. Python attributes are snake_case; the persisted and API-facing keys
are camelCase (`dataErasure`, `aiAct`) for compatibility with existing rows.

Records are immutable. Toggling returns a new map.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from nexus_compliance_engine.errors import InvalidFeatureError


class ComplianceModule(str, Enum):
    """The closed set of compliance module keys."""

    GDPR = "gdpr"
    AI_ACT = "aiAct"
    NIS2 = "nis2"
    ISO27001 = "iso27001"
    SOC2 = "soc2"
    HIPAA = "hipaa"


class ModuleSettings(BaseModel):
    """Base record for one module: the module switch plus its feature switches."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    enabled: bool = False

    @classmethod
    def feature_names(cls) -> list[str]:
        """Return the external (camelCase) feature names of this module, in declaration order."""
        return [to_camel(name) for name in cls.model_fields if name != "enabled"]

    @classmethod
    def _attribute_for(cls, feature: str) -> str | None:
        for name in cls.model_fields:
            if name != "enabled" and to_camel(name) == feature:
                return name
        return None

    def has_feature(self, feature: str) -> bool:
        """Whether `feature` (camelCase) belongs to this module."""
        return self._attribute_for(feature) is not None

    def feature_enabled(self, feature: str) -> bool:
        """Return a feature flag's value, False for unknown features."""
        attribute = self._attribute_for(feature)
        if attribute is None:
            return False
        return bool(getattr(self, attribute))

    def with_feature(self, feature: str, enabled: bool) -> "ModuleSettings":
        """Return a copy with one feature flag changed.

        Raises:
            ValueError: If the feature is not part of this module.
        """
        attribute = self._attribute_for(feature)
        if attribute is None:
            raise ValueError(feature)
        return self.model_copy(update={attribute: enabled})


class GDPRModuleSettings(ModuleSettings):
    data_export: bool = False
    data_erasure: bool = False
    consent_management: bool = False
    data_portability: bool = False
    rectification: bool = False
    restrict_processing: bool = False


class AIActModuleSettings(ModuleSettings):
    risk_classification: bool = False
    human_oversight: bool = False
    transparency_logging: bool = False
    technical_documentation: bool = False
    fria_assessment: bool = False


class NIS2ModuleSettings(ModuleSettings):
    incident_reporting: bool = False
    security_monitoring: bool = False
    supply_chain_security: bool = False
    business_continuity: bool = False


class ISO27001ModuleSettings(ModuleSettings):
    control_assessment: bool = False
    audit_trail: bool = False
    risk_management: bool = False
    access_control: bool = False


class SOC2ModuleSettings(ModuleSettings):
    security_controls: bool = False
    availability_controls: bool = False
    confidentiality_controls: bool = False


class HIPAAModuleSettings(ModuleSettings):
    phi_protection: bool = False
    audit_controls: bool = False
    access_management: bool = False


# ComplianceModule -> ModuleConfigMap attribute
_ATTRIBUTE_BY_MODULE: dict[ComplianceModule, str] = {
    ComplianceModule.GDPR: "gdpr",
    ComplianceModule.AI_ACT: "ai_act",
    ComplianceModule.NIS2: "nis2",
    ComplianceModule.ISO27001: "iso27001",
    ComplianceModule.SOC2: "soc2",
    ComplianceModule.HIPAA: "hipaa",
}


class ModuleConfigMap(BaseModel):
    """Configuration of every compliance module for one tenant."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    gdpr: GDPRModuleSettings
    ai_act: AIActModuleSettings
    nis2: NIS2ModuleSettings
    iso27001: ISO27001ModuleSettings
    soc2: SOC2ModuleSettings
    hipaa: HIPAAModuleSettings

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "ModuleConfigMap":
        """Build a map from its persisted camelCase JSON form."""
        return cls.model_validate(data)

    def to_json(self) -> dict[str, Any]:
        """Serialize to the persisted camelCase JSON form."""
        return self.model_dump(by_alias=True)

    def get(self, module: ComplianceModule) -> ModuleSettings:
        """Return one module's settings record."""
        return getattr(self, _ATTRIBUTE_BY_MODULE[ComplianceModule(module)])

    def flag_value(self, module: ComplianceModule, feature: str | None = None) -> bool:
        """Return the raw module flag, or a feature flag when `feature` is given."""
        settings = self.get(module)
        if feature is None:
            return settings.enabled
        return settings.feature_enabled(feature)

    def with_module_enabled(self, module: ComplianceModule, enabled: bool) -> "ModuleConfigMap":
        """Return a copy with the module switch changed."""
        attribute = _ATTRIBUTE_BY_MODULE[ComplianceModule(module)]
        updated = self.get(module).model_copy(update={"enabled": enabled})
        return self.model_copy(update={attribute: updated})

    def with_feature_enabled(
        self,
        module: ComplianceModule,
        feature: str,
        enabled: bool,
    ) -> "ModuleConfigMap":
        """Return a copy with one feature flag of a module changed.

        Raises:
            InvalidFeatureError: If `feature` is not part of the module's fixed feature set.
        """
        module = ComplianceModule(module)
        try:
            updated = self.get(module).with_feature(feature, enabled)
        except ValueError:
            raise InvalidFeatureError(module=module.value, feature=feature) from None
        return self.model_copy(update={_ATTRIBUTE_BY_MODULE[module]: updated})


def _all_on(model: type[ModuleSettings]) -> dict[str, bool]:
    return {name: True for name in model.model_fields}


DEFAULT_MODULE_CONFIG = ModuleConfigMap(
    gdpr=GDPRModuleSettings(**_all_on(GDPRModuleSettings)),
    ai_act=AIActModuleSettings(**_all_on(AIActModuleSettings)),
    nis2=NIS2ModuleSettings(**_all_on(NIS2ModuleSettings)),
    iso27001=ISO27001ModuleSettings(**_all_on(ISO27001ModuleSettings)),
    soc2=SOC2ModuleSettings(),
    hipaa=HIPAAModuleSettings(),
)
