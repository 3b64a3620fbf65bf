import logging
from dataclasses import asdict, replace

from django.conf import settings
from django.db import transaction
from django.db.models import Case, IntegerField, When
from django.utils import timezone

from .exceptions import AllocationConflictError, BlockError, ConfigurationError, ValidationError
from .intake import numbering
from .intake.flow import next_step
from .intake.forms import RegistrationFormAdapter
from .intake.priority import classify_draft, escalate
from .intake.types import (
    FlowStep,
    IdFormat,
    IntakeContext,
    PaymentMethod,
    PriorityLevel,
    RegistrationCategory,
)
from .intake.validator import required_fields, payment_required_fields, wizard_steps
from .models import Hospital, Patient

logger = logging.getLogger(__name__)

DEFAULT_ALLOCATION_ATTEMPTS = 5
QUEUE_LIMIT = 50


# ── Context ────────────────────────────────────────────────────────────────

def build_context(hospital_id, user=None):
    """
    根据 URL 中的 hospital_id 和当前用户构造 IntakeContext。
    医院不存在 → 404。
    """
    try:
        hospital = Hospital.objects.get(id=hospital_id)
    except Hospital.DoesNotExist:
        raise BlockError(
            message='Hospital not found',
            code='HOSPITAL_NOT_FOUND',
            detail={'hospital_id': str(hospital_id)},
            http_status=404,
        )
    user_id = getattr(user, 'pk', None) if user is not None and user.is_authenticated else None
    return IntakeContext(hospital=hospital.as_ref(), user_id=user_id)


# ── Record store ───────────────────────────────────────────────────────────

def read_hospital_id_config(hospital_id):
    """每次都重新查库，CAS 重试时必须拿到最新的 last_number。"""
    hospital = Hospital.objects.get(id=hospital_id)
    return hospital.id_config()


def write_hospital_id_config(hospital_id, config):
    updated = Hospital.objects.filter(id=hospital_id).update(
        patient_id_format=IdFormat(config.format_template).value,
        patient_id_prefix=config.prefix,
        patient_id_digits=config.digit_width,
        patient_id_auto_increment=config.auto_increment,
        patient_id_last_number=config.last_sequence_number,
        updated_at=timezone.now(),
    )
    return updated == 1


def _compare_and_swap_last_number(hospital_id, observed, new):
    """
    条件 UPDATE：只有 last_number 仍等于我们读到的值时才写入。
    返回 False 表示有其他登记抢先消耗了序号。
    """
    updated = Hospital.objects.filter(
        id=hospital_id,
        patient_id_last_number=observed,
    ).update(patient_id_last_number=new, updated_at=timezone.now())
    return updated == 1


def _payment_details(payment):
    return {k: v for k, v in asdict(payment).items() if k != 'kind' and v is not None}


def insert_patient(context, draft, classification, patient_number):
    return Patient.objects.create(
        hospital_id=context.hospital.id,
        patient_number=patient_number,
        first_name=draft.first_name,
        last_name=draft.last_name,
        date_of_birth=draft.date_of_birth,
        age=draft.age,
        gender=draft.gender,
        contact_number=draft.contact_number,
        email=draft.email,
        address=draft.address,
        emergency_contact=asdict(draft.emergency_contact),
        id_number=draft.id_number,
        registration_type=classification.registration_category.value,
        priority_level=classification.effective_priority.value,
        current_flow_step=FlowStep.REGISTRATION.value,
        payment_method=draft.payment.method.value,
        payment_details=_payment_details(draft.payment),
    )


def update_patient_flow_step(patient_id, new_step):
    updated = Patient.objects.filter(id=patient_id).update(
        current_flow_step=FlowStep(new_step).value,
        updated_at=timezone.now(),
    )
    if updated != 1:
        raise _patient_not_found(patient_id)


def _patient_not_found(patient_id):
    return BlockError(
        message='Patient not found',
        code='PATIENT_NOT_FOUND',
        detail={'patient_id': str(patient_id)},
        http_status=404,
    )


def _get_patient(context, patient_id, for_update=False):
    queryset = Patient.objects.all()
    if for_update:
        queryset = queryset.select_for_update()
    try:
        return queryset.get(id=patient_id, hospital_id=context.hospital.id)
    except Patient.DoesNotExist:
        raise _patient_not_found(patient_id)


# ── Patient ID allocation ──────────────────────────────────────────────────

def allocate_patient_number(context, manual_number=None):
    """
    原子地消耗下一个序号，返回 (展示编号, 更新后的配置)。

    读 → 计算 → 条件 UPDATE；条件不满足说明并发登记抢先了，重新读再试。
    超过 PATIENT_ID_ALLOCATION_ATTEMPTS 次仍失败 → AllocationConflictError。
    应在登记患者的同一个事务里调用，患者插入失败时序号一起回滚。
    """
    attempts = getattr(settings, 'PATIENT_ID_ALLOCATION_ATTEMPTS', DEFAULT_ALLOCATION_ATTEMPTS)
    hospital_id = context.hospital.id

    for attempt in range(1, attempts + 1):
        config = read_hospital_id_config(hospital_id)
        formatted, updated = numbering.allocate(config, context, manual_number=manual_number)

        if _compare_and_swap_last_number(hospital_id, config.last_sequence_number, updated.last_sequence_number):
            logger.info(
                "[PatientId] hospital=%s allocated %s (sequence %d, attempt %d)",
                hospital_id, formatted, updated.last_sequence_number, attempt,
            )
            return formatted, updated

        logger.warning(
            "[PatientId] hospital=%s sequence %d was taken concurrently (attempt %d/%d), retrying",
            hospital_id, updated.last_sequence_number, attempt, attempts,
        )

    logger.error("[PatientId] hospital=%s allocation failed after %d attempts", hospital_id, attempts)
    raise AllocationConflictError(
        message='Could not allocate a patient ID because of concurrent registrations. Please retry.',
        detail={'hospital_id': str(hospital_id), 'attempts': attempts},
    )


def preview_patient_id(context):
    """返回 (下一位患者的编号, 最近已分配的编号, 当前配置)。不消耗序号。"""
    config = read_hospital_id_config(context.hospital.id)
    return numbering.preview(config, context), numbering.current_tail(config, context), config


# ── Intake ─────────────────────────────────────────────────────────────────

def intake_requirements(category):
    try:
        category = RegistrationCategory(category or RegistrationCategory.NEW.value)
    except ValueError:
        raise ValidationError(
            message=f"Invalid registrationType: {category!r}.",
            code='MALFORMED_PAYLOAD',
            detail={'allowed': [c.value for c in RegistrationCategory]},
        )
    return category, required_fields(category), wizard_steps(category)


def check_registration(raw_body):
    """登记表单的试校验：只返回错误列表，不落库。"""
    _, result = RegistrationFormAdapter(raw_body).process()
    return result


def register_patient(context, raw_body):
    """
    登记新患者。

    adapter → validate → classify → [分配编号 + 插入患者 + 登记后分流] 同一事务。
    Raises ValidationError / AllocationConflictError — View 层不需要处理，exception_handler 统一兜底。
    """
    draft, result = RegistrationFormAdapter(raw_body).process()
    if not result.valid:
        logger.info(
            "[Intake] hospital=%s registration rejected: %s",
            context.hospital.id, sorted(result.fields()),
        )
        raise ValidationError(
            message='Patient registration failed validation.',
            detail={'errors': [e.as_dict() for e in result.errors]},
        )

    classification = classify_draft(draft)

    with transaction.atomic():
        patient_number, _ = allocate_patient_number(context, draft.manual_sequence_number)
        patient = insert_patient(context, draft, classification, patient_number)

        entry_step = next_step(FlowStep.REGISTRATION, classification)
        update_patient_flow_step(patient.id, entry_step)
        patient.current_flow_step = entry_step.value

    logger.info(
        "[Intake] hospital=%s registered %s (%s, %s) → %s",
        context.hospital.id, patient.patient_number,
        classification.registration_category.value, classification.effective_priority.value,
        entry_step.value,
    )
    return patient


# ── Flow ───────────────────────────────────────────────────────────────────

def _parse_step(value, field='target'):
    if value in (None, ''):
        return None
    try:
        return FlowStep(value)
    except ValueError:
        raise ValidationError(
            message=f"Unknown flow step: {value!r}.",
            code='MALFORMED_PAYLOAD',
            detail={'field': field, 'allowed': [s.value for s in FlowStep]},
        )


def advance_patient_flow(context, patient_id, target=None):
    """
    推进患者流程。

    行锁住患者后再计算跳转，两个并发操作不会基于同一个旧步骤各写一次。
    非法跳转在写库之前抛 InvalidTransitionError，current_flow_step 保持不变。
    """
    target_step = _parse_step(target)

    with transaction.atomic():
        patient = _get_patient(context, patient_id, for_update=True)
        current = FlowStep(patient.current_flow_step)
        new_step = next_step(current, patient.classification(), target_step)
        update_patient_flow_step(patient.id, new_step)
        patient.current_flow_step = new_step.value

    logger.info(
        "[Flow] hospital=%s patient=%s %s → %s (user=%s)",
        context.hospital.id, patient.patient_number, current.value, new_step.value, context.user_id,
    )
    return patient, current


def escalate_patient_priority(context, patient_id, priority):
    try:
        proposed = PriorityLevel(priority)
    except ValueError:
        raise ValidationError(
            message=f"Invalid priorityLevel: {priority!r}.",
            code='MALFORMED_PAYLOAD',
            detail={'allowed': [p.value for p in PriorityLevel]},
        )

    with transaction.atomic():
        patient = _get_patient(context, patient_id, for_update=True)
        current = PriorityLevel(patient.priority_level)
        resolved = escalate(current, proposed)
        if resolved == current:
            if proposed != current:
                logger.info(
                    "[Flow] patient=%s priority stays %s (requested %s; priorities are never lowered)",
                    patient.patient_number, current.value, proposed.value,
                )
            return patient
        patient.priority_level = resolved.value
        patient.save(update_fields=['priority_level', 'updated_at'])

    logger.info("[Flow] patient=%s priority %s → %s", patient.patient_number, current.value, resolved.value)
    return patient


# ── Queries ────────────────────────────────────────────────────────────────

def get_patient_detail(context, patient_id):
    return _get_patient(context, patient_id)


def list_patients_at_step(context, step=None, limit=None):
    """
    某个流程步骤上的患者队列：critical 在前，同级按登记先后。

    返回 (前 limit 位患者, 队列总人数)。
    """
    queryset = Patient.objects.filter(hospital_id=context.hospital.id)
    step = _parse_step(step, field='step')
    if step is not None:
        queryset = queryset.filter(current_flow_step=step.value)

    severity = Case(
        When(priority_level=PriorityLevel.CRITICAL.value, then=0),
        When(priority_level=PriorityLevel.URGENT.value, then=1),
        default=2,
        output_field=IntegerField(),
    )
    if limit is None:
        limit = QUEUE_LIMIT
    total = queryset.count()
    patients = list(queryset.annotate(severity=severity).order_by('severity', 'created_at')[:limit])
    return patients, total


# ── ID settings ────────────────────────────────────────────────────────────

_SETTINGS_FIELDS = {
    'patient_id_format': 'format_template',
    'patient_id_prefix': 'prefix',
    'patient_id_digits': 'digit_width',
    'patient_id_auto_increment': 'auto_increment',
    'patient_id_last_number': 'last_sequence_number',
}


def get_id_settings(context):
    return read_hospital_id_config(context.hospital.id)


def _coerce_settings(data):
    """
    把设置表单的原始值转换成 HospitalIdConfig 字段类型。

    类型不对的值记为 invalid_format，不做猜测：
    "false" 不会被当成 True，41.9 不会被截断成 41。
    """
    changes, errors = {}, []
    for key, attr in _SETTINGS_FIELDS.items():
        if key not in data:
            continue
        value = data[key]
        if attr in ('digit_width', 'last_sequence_number'):
            if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                value = None
            try:
                value = int(value)
            except (TypeError, ValueError):
                errors.append({'field': key, 'code': 'invalid_format', 'message': 'Must be a whole number'})
                continue
        elif attr == 'auto_increment':
            if not isinstance(value, bool):
                errors.append({'field': key, 'code': 'invalid_format', 'message': 'Must be true or false'})
                continue
        elif attr == 'prefix':
            if value is None:
                value = ''
            if not isinstance(value, str):
                errors.append({'field': key, 'code': 'invalid_format', 'message': 'Must be a string'})
                continue
            value = value.strip()
        changes[attr] = value
    return changes, errors


def update_id_settings(context, data):
    """
    保存编号配置（管理员设置页）。

    - 配置不合法 → ConfigurationError，列出所有字段错误
    - last_number 只能调大不能调小 → ConfigurationError(SEQUENCE_DECREASE)
    行锁住医院记录，与正在进行的编号分配互斥。
    """
    if not isinstance(data, dict):
        raise ConfigurationError(message='Settings payload must be a JSON object.')

    changes, errors = _coerce_settings(data)
    if errors:
        raise ConfigurationError(message='Invalid patient ID settings.', detail={'errors': errors})

    with transaction.atomic():
        hospital = Hospital.objects.select_for_update().get(id=context.hospital.id)
        current = hospital.id_config()
        candidate = replace(current, **changes)

        field_errors = numbering.validate_config(candidate, hospital.subdomain)
        if field_errors:
            raise ConfigurationError(
                message='Invalid patient ID settings.',
                detail={'errors': [e.as_dict() for e in field_errors]},
            )

        if candidate.last_sequence_number < current.last_sequence_number:
            raise ConfigurationError(
                message=(
                    f"Last used number cannot be lowered from {current.last_sequence_number} "
                    f"to {candidate.last_sequence_number}; patient IDs would be reused."
                ),
                code='SEQUENCE_DECREASE',
                detail={
                    'field': 'patient_id_last_number',
                    'current': current.last_sequence_number,
                    'submitted': candidate.last_sequence_number,
                },
            )

        candidate = replace(candidate, format_template=IdFormat(candidate.format_template))
        write_hospital_id_config(hospital.id, candidate)

    logger.info("[PatientId] hospital=%s settings updated: %s", context.hospital.id, sorted(changes))
    return candidate


def payment_requirements():
    """各支付方式对应的必填子字段，供前端动态渲染。"""
    return {m.value: sorted(payment_required_fields(m)) for m in PaymentMethod}
