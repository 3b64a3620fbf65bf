"""
Response serializers — ORM 对象 / intake 结果 → JSON-able dict。

只负责「输出格式化」，不做任何解析或校验。
输入解析和校验在 patientflow/intake/ 里。
"""

from .intake.flow import allowed_targets
from .intake.types import FlowStep


def _date(value):
    return value.isoformat() if value else None


def serialize_patient_registered(patient):
    """Serialize patient for 201 registration response."""
    return {
        'patient_id': str(patient.id),
        'patient_number': patient.patient_number,
        'registration_type': patient.registration_type,
        'priority_level': patient.priority_level,
        'current_flow_step': patient.current_flow_step,
        'message': 'Patient registered.',
        'created_at': patient.created_at.isoformat(),
    }


def serialize_patient_detail(patient):
    """Serialize patient detail, including where the patient may go next."""
    return {
        'patient_id': str(patient.id),
        'patient_number': patient.patient_number,
        'name': patient.full_name,
        'first_name': patient.first_name,
        'last_name': patient.last_name,
        'date_of_birth': _date(patient.date_of_birth),
        'age': patient.age,
        'gender': patient.gender,
        'contact_number': patient.contact_number,
        'email': patient.email,
        'address': patient.address,
        'emergency_contact': patient.emergency_contact,
        'id_number': patient.id_number,
        'registration_type': patient.registration_type,
        'priority_level': patient.priority_level,
        'current_flow_step': patient.current_flow_step,
        'allowed_next_steps': sorted(
            s.value for s in allowed_targets(_step(patient), patient.classification())
        ),
        'payment': {
            'method': patient.payment_method,
            'details': patient.payment_details,
        },
        'status': patient.status,
        'created_at': patient.created_at.isoformat(),
        'updated_at': patient.updated_at.isoformat(),
    }


def _step(patient):
    return FlowStep(patient.current_flow_step)


def serialize_flow_transition(patient, previous_step):
    return {
        'patient_id': str(patient.id),
        'patient_number': patient.patient_number,
        'previous_step': previous_step.value,
        'current_flow_step': patient.current_flow_step,
    }


def serialize_patient_queue(patients, total=None):
    """
    Serialize work-queue list.

    count 是队列总人数；patients 只包含本次返回的前几位（见 services.QUEUE_LIMIT）。
    """
    results = [
        {
            'patient_id': str(p.id),
            'patient_number': p.patient_number,
            'name': p.full_name,
            'priority_level': p.priority_level,
            'current_flow_step': p.current_flow_step,
            'created_at': p.created_at.isoformat(),
        }
        for p in patients
    ]
    return {
        'count': len(results) if total is None else total,
        'returned': len(results),
        'patients': results,
    }


def serialize_id_settings(config):
    return {
        'patient_id_format': config.format_template.value,
        'patient_id_prefix': config.prefix,
        'patient_id_digits': config.digit_width,
        'patient_id_auto_increment': config.auto_increment,
        'patient_id_last_number': config.last_sequence_number,
    }


def serialize_id_preview(next_id, last_used_id, config):
    return {
        'next_id': next_id,
        'last_used_id': last_used_id if config.last_sequence_number > 0 else None,
        'auto_increment': config.auto_increment,
    }


def serialize_requirements(category, fields, steps, payment_fields):
    return {
        'registration_type': category.value,
        'required_fields': sorted(fields),
        'payment_required_fields': payment_fields,
        'wizard_steps': steps,
    }
