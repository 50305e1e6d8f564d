"""Report schemas."""

from pydantic import BaseModel

from convenio.schemas.common import Money


class RevenueSummary(BaseModel):
    professional_percentage: Money
    total_revenue: Money
    consultation_count: int
    convenio_revenue: Money
    private_revenue: Money
    amount_to_pay: Money


class ConsultationRow(BaseModel):
    id: int
    appointment_at: str
    patient_name: str | None
    service_name: str | None
    patient_type: str
    value: Money
    amount_to_pay: Money


class ProfessionalRevenueResponse(BaseModel):
    summary: RevenueSummary
    consultations: list[ConsultationRow]


class ProfessionalRevenueRow(BaseModel):
    professional_id: int
    professional_name: str | None
    professional_percentage: Money
    consultation_count: int
    revenue: Money
    convenio_revenue: Money
    clinic_revenue: Money


class ServiceRevenueRow(BaseModel):
    service_id: int
    service_name: str | None
    consultation_count: int
    revenue: Money


class RevenueOverviewResponse(BaseModel):
    total_revenue: Money
    revenue_by_professional: list[ProfessionalRevenueRow]
    revenue_by_service: list[ServiceRevenueRow]


class CancelledConsultationRow(BaseModel):
    id: int
    appointment_at: str
    professional_id: int
    professional_name: str | None
    patient_name: str | None
    patient_type: str
    service_name: str | None
    value: Money
    cancellation_reason: str | None
    cancelled_at: str | None
    cancelled_by: int | None
    cancelled_by_name: str | None
