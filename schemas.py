import math
from datetime import datetime, date
from enum import Enum
from typing import Optional, Dict, List
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import JobStatus


# =========================
# Request / configuration
# =========================
class ColumnOperation(str, Enum):
    SUM = "sum"
    MAX = "max"


class MeterConfig(BaseModel):
    """Column selection and per-column handling, validated once at request time."""
    model_config = ConfigDict(populate_by_name=True)

    selected_columns: List[str] = Field(default_factory=list, alias="selectedColumns")
    column_operations: Dict[str, ColumnOperation] = Field(default_factory=dict, alias="columnOperations")
    column_factors: Dict[str, float] = Field(default_factory=dict, alias="columnFactors")
    # meter id (as string, JSON keys) -> assignment label, e.g. "tenant", "grid_supply"
    meter_assignments: Dict[str, str] = Field(default_factory=dict, alias="meterAssignments")
    meter_order: List[str] = Field(default_factory=list, alias="meterOrder")

    @field_validator("column_factors")
    @classmethod
    def _finite_factors(cls, v: Dict[str, float]) -> Dict[str, float]:
        for key, factor in v.items():
            if not math.isfinite(factor):
                raise ValueError(f"column factor for {key!r} must be finite")
        return v

    def factor_for(self, column: str) -> float:
        return self.column_factors.get(column, 1.0)

    def assignment_for(self, meter_id: int) -> str:
        return self.meter_assignments.get(str(meter_id)) or "unassigned"


class PeriodRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    file_name: str
    period_start: date
    period_end: date

    @model_validator(mode="after")
    def _ordered(self):
        if self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")
        return self


class ReconciliationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_id: int = Field(alias="siteId")
    document_period_ids: List[str] = Field(alias="documentPeriodIds")
    document_date_ranges: List[PeriodRange] = Field(alias="documentDateRanges")
    enable_revenue: bool = Field(default=False, alias="enableRevenue")
    meter_config: MeterConfig = Field(default_factory=MeterConfig, alias="meterConfig")


class ReconciliationStarted(BaseModel):
    success: bool = True
    jobId: UUID
    message: str = "Bulk reconciliation started in background"


# =========================
# Engine types
# =========================
class MeterInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    meter_number: str
    meter_type: str = "other"
    name: Optional[str] = None
    location: Optional[str] = None
    tariff_structure_id: Optional[int] = None
    assigned_tariff_name: Optional[str] = None


class CorrectionRecord(BaseModel):
    meter_id: int
    meter_number: str
    field_name: str
    source: str = "direct"  # reading view the value came from: direct | hierarchical
    timestamp: Optional[datetime] = None
    original_value: float
    corrected_value: float
    reason: str


class SourceTotals(BaseModel):
    total_kwh: float = 0.0
    column_totals: Dict[str, float] = Field(default_factory=dict)
    column_max_values: Dict[str, float] = Field(default_factory=dict)
    readings_count: int = 0


class CostResult(BaseModel):
    energy_cost: float = 0.0
    fixed_charges: float = 0.0
    demand_charges: float = 0.0
    total_cost: float = 0.0
    avg_cost_per_kwh: float = 0.0
    has_error: bool = False
    error_message: Optional[str] = None


class MeterResult(BaseModel):
    id: int
    meter_number: str
    meter_type: str
    name: Optional[str] = None
    location: Optional[str] = None
    assignment: str = "unassigned"
    is_parent: bool = False

    direct: SourceTotals = Field(default_factory=SourceTotals)
    hierarchical: SourceTotals = Field(default_factory=SourceTotals)
    direct_cost: CostResult = Field(default_factory=CostResult)
    hierarchical_cost: CostResult = Field(default_factory=CostResult)

    has_error: bool = False
    error_message: Optional[str] = None
    tariff_structure_id: Optional[int] = None
    assigned_tariff_name: Optional[str] = None
    cost_calculation_error: Optional[str] = None

    # Legacy single-valued view: hierarchical for parents, direct for leaves
    @property
    def chosen(self) -> SourceTotals:
        return self.hierarchical if self.is_parent else self.direct

    @property
    def chosen_cost(self) -> CostResult:
        return self.hierarchical_cost if self.is_parent else self.direct_cost

    @property
    def total_kwh(self) -> float:
        return self.chosen.total_kwh

    @property
    def has_data(self) -> bool:
        return self.direct.readings_count > 0 or self.hierarchical.readings_count > 0


class TariffBlockRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    block_number: int
    kwh_from: float = 0.0
    kwh_to: Optional[float] = None
    energy_charge_cents: float


class TariffChargeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    charge_type: str
    charge_amount: float
    unit: Optional[str] = None


class TariffStructureRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    tariff_type: Optional[str] = None
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    blocks: List[TariffBlockRead] = Field(default_factory=list)
    charges: List[TariffChargeRead] = Field(default_factory=list)


class ReconciliationSummary(BaseModel):
    categories: Dict[str, List[int]] = Field(default_factory=dict)  # category -> meter ids

    grid_supply_total: float = 0.0
    bulk_total: float = 0.0
    solar_total: float = 0.0
    tenant_total: float = 0.0
    check_total: float = 0.0
    distribution_meter_total: float = 0.0
    total_supply: float = 0.0
    distribution_total: float = 0.0
    discrepancy: float = 0.0
    distribution_discrepancy: float = 0.0
    recovery_rate: float = 0.0

    revenue_enabled: bool = False
    grid_supply_cost: float = 0.0
    solar_cost: float = 0.0
    tenant_cost: float = 0.0
    total_revenue: float = 0.0
    avg_cost_per_kwh: float = 0.0


class JobState(BaseModel):
    """Progress of one bulk job, owned by the running task and upserted by id."""
    status: JobStatus = JobStatus.RUNNING
    total_periods: int = 0
    completed_periods: int = 0
    current_period: Optional[str] = None
    error_message: Optional[str] = None
    success_count: int = 0
    failed_periods: List[str] = Field(default_factory=list)


# =========================
# Read DTOs
# =========================
class JobRead(BaseModel):
    id: UUID
    site_id: int
    status: JobStatus
    total_periods: int
    completed_periods: int
    current_period: Optional[str] = None
    document_period_ids: List[str] = Field(default_factory=list)
    enable_revenue: bool
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class RunRead(BaseModel):
    id: UUID
    site_id: int
    job_id: Optional[UUID] = None
    run_name: str
    date_from: datetime
    date_to: datetime
    bulk_total: float
    solar_total: float
    tenant_total: float
    check_total: float
    bulk_meter_total: float
    total_supply: float
    distribution_total: float
    discrepancy: float
    recovery_rate: float
    revenue_enabled: bool
    grid_supply_cost: float
    solar_cost: float
    tenant_cost: float
    total_revenue: float
    avg_cost_per_kwh: float
    corrections_count: int
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class MeterResultRead(BaseModel):
    id: UUID
    run_id: UUID
    meter_id: int
    meter_number: str
    meter_type: str
    meter_name: Optional[str] = None
    location: Optional[str] = None
    assignment: Optional[str] = None
    category: Optional[str] = None
    total_kwh: float
    total_kwh_positive: float
    total_kwh_negative: float
    column_totals: Dict[str, float] = Field(default_factory=dict)
    column_max_values: Dict[str, float] = Field(default_factory=dict)
    readings_count: int
    direct_total_kwh: float
    direct_readings_count: int
    direct_column_totals: Dict[str, float] = Field(default_factory=dict)
    direct_column_max_values: Dict[str, float] = Field(default_factory=dict)
    hierarchical_total: float
    hierarchical_readings_count: int
    hierarchical_column_totals: Dict[str, float] = Field(default_factory=dict)
    hierarchical_column_max_values: Dict[str, float] = Field(default_factory=dict)
    direct_energy_cost: float
    direct_fixed_charges: float
    direct_demand_charges: float
    direct_total_cost: float
    direct_avg_cost_per_kwh: float
    hierarchical_energy_cost: float
    hierarchical_fixed_charges: float
    hierarchical_demand_charges: float
    hierarchical_total_cost: float
    hierarchical_avg_cost_per_kwh: float
    has_error: bool
    error_message: Optional[str] = None
    tariff_structure_id: Optional[int] = None
    tariff_name: Optional[str] = None
    cost_calculation_error: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class CorrectionRead(BaseModel):
    id: int
    run_id: UUID
    meter_id: int
    meter_number: str
    field_name: str
    source: str
    reading_timestamp: Optional[datetime] = None
    original_value: float
    corrected_value: float
    reason: str
    model_config = ConfigDict(from_attributes=True)
