from .forms import RegistrationFormAdapter
from .flow import allowed_targets, default_next_step, next_step
from .numbering import allocate, format_patient_id, preview, validate_config
from .priority import classify, classify_draft, escalate
from .validator import required_fields, validate, wizard_steps

__all__ = [
    "RegistrationFormAdapter",
    "allocate",
    "allowed_targets",
    "classify",
    "classify_draft",
    "default_next_step",
    "escalate",
    "format_patient_id",
    "next_step",
    "preview",
    "required_fields",
    "validate",
    "validate_config",
    "wizard_steps",
]
