"""ORM models package: re-exports all models for Alembic auto-detection."""

from claimflow.models.engineer import Engineer  # noqa: F401
from claimflow.models.claim_request import ClaimRequest, RequestStatus, RequestType  # noqa: F401
from claimflow.models.inspection import Inspection, InspectionStatus  # noqa: F401
from claimflow.models.appointment import Appointment, AppointmentStatus  # noqa: F401
from claimflow.models.assessment import (  # noqa: F401
    PIPELINE,
    PRE_APPOINTMENT_STAGES,
    TERMINAL_STAGES,
    Assessment,
    AssessmentStage,
)
from claimflow.models.assessment_records import (  # noqa: F401
    AssessmentDamage,
    AssessmentEstimate,
    AssessmentFRC,
    AssessmentTyre,
    AssessmentVehicleValues,
    PreIncidentEstimate,
    TyrePosition,
)
from claimflow.models.audit_log import AuditLog  # noqa: F401
from claimflow.models.sequence_counter import SequenceCounter, SequenceKind  # noqa: F401
from claimflow.models.compensation_task import (  # noqa: F401
    CompensationKind,
    CompensationStatus,
    CompensationTask,
)
