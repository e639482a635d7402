from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from credit_engine.schemas.validators import validate_code

ConfigLevel = Literal["operation", "module", "application"]
ConfigUnit = Literal["operation", "record", "minute", "MB", "GB"]
ConfigPeriod = Literal["day", "week", "month", "year"]


class VolumeTier(BaseModel):
    up_to: Optional[int] = Field(default=None, gt=0)
    credit_cost: float = Field(ge=0)


class CreditConfigWrite(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    credit_cost: Optional[float] = Field(default=None, ge=0)
    unit: Optional[ConfigUnit] = None
    unit_multiplier: Optional[float] = Field(default=None, gt=0)
    free_allowance: Optional[int] = Field(default=None, ge=0)
    free_allowance_period: Optional[ConfigPeriod] = None
    volume_tiers: Optional[list[VolumeTier]] = None
    allow_overage: Optional[bool] = None
    overage_limit: Optional[int] = Field(default=None, ge=0)
    overage_period: Optional[ConfigPeriod] = None
    overage_cost: Optional[float] = Field(default=None, ge=0)
    is_inherited: bool = False
    priority: int = Field(default=0, ge=0, le=1000)
    # Write the global default instead of the caller's tenant override
    global_scope: bool = False

    @model_validator(mode="after")
    def check_has_pricing(self):
        if not self.is_inherited and self.credit_cost is None and not self.volume_tiers:
            raise ValueError("a non-inherited config needs credit_cost or volume_tiers")
        return self

    def to_config_data(self) -> dict:
        data = self.model_dump(exclude={"global_scope"})
        if self.volume_tiers is not None:
            data["volume_tiers"] = [tier.model_dump() for tier in self.volume_tiers]
        return data


class CreditConfigBulkEntry(BaseModel):
    level: ConfigLevel
    code: str
    config: CreditConfigWrite

    @field_validator("code")
    @classmethod
    def check_code(cls, v: str) -> str:
        return validate_code(v)


class CreditConfigBulkWrite(BaseModel):
    configs: list[CreditConfigBulkEntry] = Field(min_length=1, max_length=100)
    global_scope: bool = False


class EffectiveConfigResponse(BaseModel):
    code: str
    level: str
    source: str
    is_fallback: bool
    credit_cost: float
    unit: str
    unit_multiplier: float
    free_allowance: int
    free_allowance_period: str
    volume_tiers: list[dict]
    allow_overage: bool
    overage_limit: int | None = None
    overage_period: str
    overage_cost: float | None = None
    config_id: str | None = None
    inherited_from: list[str] = []


class CreditConfigResponse(BaseModel):
    id: str
    config_level: str
    code: str
    tenant_id: str | None = None
    scope: str
    name: str | None = None
    credit_cost: float | None = None
    unit: str | None = None
    unit_multiplier: float | None = None
    free_allowance: int | None = None
    free_allowance_period: str | None = None
    volume_tiers: list[dict] | None = None
    allow_overage: bool | None = None
    overage_limit: int | None = None
    overage_period: str | None = None
    overage_cost: float | None = None
    is_inherited: bool
    is_active: bool
    priority: int
    updated_at: str | None = None
