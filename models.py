from enum import Enum
import uuid

from tortoise import fields, models


class MeterType(str, Enum):
    BULK = "bulk"
    CHECK = "check"
    TENANT = "tenant"
    SOLAR = "solar"
    COUNCIL = "council"
    DISTRIBUTION = "distribution"
    OTHER = "other"


class HierarchicalSource(str, Enum):
    """Provenance tag of a row in the generated (hierarchical) reading table."""
    COPIED = "copied"                                   # leaf meter pass-through
    HIERARCHICAL_AGGREGATION = "hierarchical_aggregation"  # sum of children


class ChargeType(str, Enum):
    BASIC_MONTHLY = "basic_monthly"
    BASIC_CHARGE = "basic_charge"
    ENERGY_BOTH_SEASONS = "energy_both_seasons"
    ENERGY_LOW_SEASON = "energy_low_season"
    ENERGY_HIGH_SEASON = "energy_high_season"
    DEMAND_LOW_SEASON = "demand_low_season"
    DEMAND_HIGH_SEASON = "demand_high_season"


class JobStatus(str, Enum):
    RUNNING = "running"
    CANCELLED = "cancelled"
    FAILED = "failed"
    COMPLETE = "complete"


# -------- Core hierarchy --------
class SupplyAuthority(models.Model):
    id = fields.IntField(pk=True)
    name = fields.CharField(max_length=200, unique=True, index=True)
    region = fields.CharField(max_length=100, null=True)

    class Meta:
        table = "supply_authorities"

    def __str__(self) -> str:
        return self.name


class Site(models.Model):
    id = fields.IntField(pk=True)
    name = fields.CharField(max_length=200, index=True)
    supply_authority = fields.ForeignKeyField(
        "models.SupplyAuthority", null=True, related_name="sites", on_delete=fields.SET_NULL, index=True
    )
    created_at = fields.DatetimeField(auto_now_add=True, index=True)
    updated_at = fields.DatetimeField(auto_now=True, index=True)

    class Meta:
        table = "sites"

    def __str__(self) -> str:
        return self.name or f"Site#{self.id}"


# -------- Metering --------
class Meter(models.Model):
    id = fields.IntField(pk=True)
    site = fields.ForeignKeyField("models.Site", related_name="meters", on_delete=fields.CASCADE, index=True)
    meter_number = fields.CharField(max_length=64, index=True)
    meter_type = fields.CharEnumField(MeterType, max_length=20, default=MeterType.OTHER)
    name = fields.CharField(max_length=200, null=True)
    location = fields.CharField(max_length=200, null=True)

    # tariff assignment: a direct reference wins over a name to resolve
    tariff_structure = fields.ForeignKeyField(
        "models.TariffStructure", null=True, related_name="meters", on_delete=fields.SET_NULL, index=True
    )
    assigned_tariff_name = fields.CharField(max_length=200, null=True)

    created_at = fields.DatetimeField(auto_now_add=True, index=True)
    updated_at = fields.DatetimeField(auto_now=True, index=True)

    class Meta:
        table = "meters"
        unique_together = ("site", "meter_number")

    def __str__(self) -> str:
        return self.meter_number


class MeterConnection(models.Model):
    """Directed edge parent -> child. Together they form the site's meter tree."""
    id = fields.IntField(pk=True)
    parent_meter = fields.ForeignKeyField("models.Meter", related_name="child_connections", on_delete=fields.CASCADE, index=True)
    child_meter = fields.ForeignKeyField("models.Meter", related_name="parent_connections", on_delete=fields.CASCADE, index=True)

    class Meta:
        table = "meter_connections"
        unique_together = ("parent_meter", "child_meter")


class MeterReading(models.Model):
    """Direct readings as uploaded (one row per meter per interval)."""
    id = fields.IntField(pk=True)
    meter = fields.ForeignKeyField("models.Meter", related_name="readings", on_delete=fields.CASCADE, index=True)
    reading_timestamp = fields.DatetimeField(index=True)
    kwh_value = fields.FloatField(default=0.0)
    kva_value = fields.FloatField(null=True)
    imported_fields = fields.JSONField(default=dict)  # e.g. {"P1": 12.3, "S": 40.1}
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "meter_readings"
        indexes = (("meter_id", "reading_timestamp"),)


class HierarchicalMeterReading(models.Model):
    """Generated readings: leaf copies and parent sums, tagged by source."""
    id = fields.IntField(pk=True)
    meter = fields.ForeignKeyField("models.Meter", related_name="hierarchical_readings", on_delete=fields.CASCADE, index=True)
    reading_timestamp = fields.DatetimeField(index=True)
    kwh_value = fields.FloatField(default=0.0)
    kva_value = fields.FloatField(null=True)
    imported_fields = fields.JSONField(default=dict)
    source = fields.CharEnumField(HierarchicalSource, max_length=32, index=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "hierarchical_meter_readings"
        unique_together = ("meter", "reading_timestamp", "source")


# ========================
# Tariffs
# ========================
class TariffStructure(models.Model):
    id = fields.IntField(pk=True)
    name = fields.CharField(max_length=200, index=True)
    supply_authority = fields.ForeignKeyField(
        "models.SupplyAuthority", related_name="tariffs", on_delete=fields.CASCADE, index=True
    )
    tariff_type = fields.CharField(max_length=64, null=True)
    effective_from = fields.DateField(index=True)
    effective_to = fields.DateField(null=True, index=True)  # null = still active
    active = fields.BooleanField(default=True, index=True)

    blocks: fields.ReverseRelation["TariffBlock"]
    charges: fields.ReverseRelation["TariffCharge"]

    class Meta:
        table = "tariff_structures"

    def __str__(self) -> str:
        return self.name


class TariffBlock(models.Model):
    id = fields.IntField(pk=True)
    tariff = fields.ForeignKeyField("models.TariffStructure", related_name="blocks", on_delete=fields.CASCADE)
    block_number = fields.IntField()
    kwh_from = fields.FloatField(default=0.0)
    kwh_to = fields.FloatField(null=True)  # null = unbounded
    energy_charge_cents = fields.FloatField()

    class Meta:
        table = "tariff_blocks"
        unique_together = ("tariff", "block_number")


class TariffCharge(models.Model):
    id = fields.IntField(pk=True)
    tariff = fields.ForeignKeyField("models.TariffStructure", related_name="charges", on_delete=fields.CASCADE)
    charge_type = fields.CharEnumField(ChargeType, max_length=32, index=True)
    charge_amount = fields.FloatField()
    unit = fields.CharField(max_length=32, null=True)  # 'c/kWh' | 'R/month' | 'R/kVA'

    class Meta:
        table = "tariff_charges"


# ========================
# Reconciliation
# ========================
class ReconciliationJob(models.Model):
    id = fields.UUIDField(pk=True, default=uuid.uuid4)
    site = fields.ForeignKeyField("models.Site", related_name="reconciliation_jobs", on_delete=fields.CASCADE, index=True)
    status = fields.CharEnumField(JobStatus, max_length=12, default=JobStatus.RUNNING, index=True)
    total_periods = fields.IntField(default=0)
    completed_periods = fields.IntField(default=0)
    current_period = fields.CharField(max_length=255, null=True)
    document_period_ids = fields.JSONField(default=list)
    request = fields.JSONField(default=dict)  # submitted request (periods, config)
    enable_revenue = fields.BooleanField(default=False)
    error_message = fields.TextField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True, index=True)
    updated_at = fields.DatetimeField(auto_now=True, index=True)

    class Meta:
        table = "bulk_reconciliation_jobs"


class ReconciliationRun(models.Model):
    id = fields.UUIDField(pk=True, default=uuid.uuid4)
    site = fields.ForeignKeyField("models.Site", related_name="reconciliation_runs", on_delete=fields.CASCADE, index=True)
    job = fields.ForeignKeyField("models.ReconciliationJob", null=True, related_name="runs", on_delete=fields.SET_NULL, index=True)
    run_name = fields.CharField(max_length=255)
    date_from = fields.DatetimeField(index=True)
    date_to = fields.DatetimeField(index=True)

    # energy (kWh)
    bulk_total = fields.FloatField(default=0.0)  # grid supply
    solar_total = fields.FloatField(default=0.0)
    tenant_total = fields.FloatField(default=0.0)
    check_total = fields.FloatField(default=0.0)
    bulk_meter_total = fields.FloatField(default=0.0)
    total_supply = fields.FloatField(default=0.0)
    distribution_total = fields.FloatField(default=0.0)
    discrepancy = fields.FloatField(default=0.0)
    recovery_rate = fields.FloatField(default=0.0)

    # money
    revenue_enabled = fields.BooleanField(default=False)
    grid_supply_cost = fields.FloatField(default=0.0)
    solar_cost = fields.FloatField(default=0.0)
    tenant_cost = fields.FloatField(default=0.0)
    total_revenue = fields.FloatField(default=0.0)
    avg_cost_per_kwh = fields.FloatField(default=0.0)

    corrections_count = fields.IntField(default=0)
    created_at = fields.DatetimeField(auto_now_add=True, index=True)

    class Meta:
        table = "reconciliation_runs"


class ReconciliationMeterResult(models.Model):
    id = fields.UUIDField(pk=True, default=uuid.uuid4)
    run = fields.ForeignKeyField("models.ReconciliationRun", related_name="meter_results", on_delete=fields.CASCADE, index=True)
    meter_id = fields.IntField(index=True)
    meter_number = fields.CharField(max_length=64)
    meter_type = fields.CharField(max_length=20)
    meter_name = fields.CharField(max_length=200, null=True)
    location = fields.CharField(max_length=200, null=True)
    assignment = fields.CharField(max_length=64, null=True)
    category = fields.CharField(max_length=20, null=True)

    # legacy view: hierarchical for parents, direct for leaves
    total_kwh = fields.FloatField(default=0.0)
    total_kwh_positive = fields.FloatField(default=0.0)
    total_kwh_negative = fields.FloatField(default=0.0)
    column_totals = fields.JSONField(default=dict)
    column_max_values = fields.JSONField(default=dict)
    readings_count = fields.IntField(default=0)

    direct_total_kwh = fields.FloatField(default=0.0)
    direct_readings_count = fields.IntField(default=0)
    direct_column_totals = fields.JSONField(default=dict)
    direct_column_max_values = fields.JSONField(default=dict)

    hierarchical_total = fields.FloatField(default=0.0)
    hierarchical_readings_count = fields.IntField(default=0)
    hierarchical_column_totals = fields.JSONField(default=dict)
    hierarchical_column_max_values = fields.JSONField(default=dict)

    direct_energy_cost = fields.FloatField(default=0.0)
    direct_fixed_charges = fields.FloatField(default=0.0)
    direct_demand_charges = fields.FloatField(default=0.0)
    direct_total_cost = fields.FloatField(default=0.0)
    direct_avg_cost_per_kwh = fields.FloatField(default=0.0)

    hierarchical_energy_cost = fields.FloatField(default=0.0)
    hierarchical_fixed_charges = fields.FloatField(default=0.0)
    hierarchical_demand_charges = fields.FloatField(default=0.0)
    hierarchical_total_cost = fields.FloatField(default=0.0)
    hierarchical_avg_cost_per_kwh = fields.FloatField(default=0.0)

    has_error = fields.BooleanField(default=False)
    error_message = fields.TextField(null=True)
    tariff_structure_id = fields.IntField(null=True)
    tariff_name = fields.CharField(max_length=200, null=True)
    cost_calculation_error = fields.TextField(null=True)

    class Meta:
        table = "reconciliation_meter_results"
        unique_together = ("run", "meter_id")


class ReadingCorrection(models.Model):
    """Audit trail of repaired reading values (write-once)."""
    id = fields.IntField(pk=True)
    run = fields.ForeignKeyField("models.ReconciliationRun", related_name="corrections", on_delete=fields.CASCADE, index=True)
    meter_id = fields.IntField(index=True)
    meter_number = fields.CharField(max_length=64)
    field_name = fields.CharField(max_length=64)
    source = fields.CharField(max_length=16, default="direct", index=True)  # direct | hierarchical
    reading_timestamp = fields.DatetimeField(null=True)
    original_value = fields.FloatField()
    corrected_value = fields.FloatField()
    reason = fields.CharField(max_length=255)

    class Meta:
        table = "reading_corrections"
