from crmcore.fields.models import CRMFieldDefinition
from crmcore.records.models import (
    CRMAccount,
    CRMContact,
    CRMCustomModule,
    CRMCustomModuleRecord,
    CRMLead,
    CRMOpportunity,
)
from crmcore.segments.models import CRMSegment, CRMSegmentMember

__all__ = [
    "CRMAccount",
    "CRMContact",
    "CRMCustomModule",
    "CRMCustomModuleRecord",
    "CRMFieldDefinition",
    "CRMLead",
    "CRMOpportunity",
    "CRMSegment",
    "CRMSegmentMember",
]
