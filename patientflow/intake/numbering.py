"""
PatientIdAllocator — 按医院的编号配置生成患者展示编号。

格式模板：
  prefix_number           PT000042
  prefix_year_number      PT2025-000042
  hospital_prefix_number  GH-PT-000042   （子域名前两位大写）
  custom                  同 prefix_number

这里只做纯计算：allocate() 返回 (编号, 新配置)，由 service 层用
条件 UPDATE 原子地写回数据库，保证并发下序号不重复、不跳号。
"""

from dataclasses import replace
from datetime import date
from typing import Optional

from ..exceptions import ValidationError
from .types import FieldError, HospitalIdConfig, IdFormat, IntakeContext

MIN_DIGITS = 1
MAX_DIGITS = 10
MAX_PREFIX_LENGTH = 10
# 与 Hospital.patient_id_last_number 的列类型一致（32 位有符号整数）
MAX_SEQUENCE_NUMBER = 2_147_483_647


def _hospital_code(subdomain: str) -> str:
    return (subdomain or "")[:2].upper()


def format_patient_id(
    config: HospitalIdConfig,
    number: int,
    *,
    hospital_subdomain: str = "",
    year: Optional[int] = None,
) -> str:
    # 超出位数时原样输出，不截断
    padded = str(max(number, 0)).zfill(config.digit_width)
    template = IdFormat(config.format_template)

    if template == IdFormat.PREFIX_YEAR_NUMBER:
        year = year if year is not None else date.today().year
        return f"{config.prefix}{year}-{padded}"
    if template == IdFormat.HOSPITAL_PREFIX_NUMBER:
        return f"{_hospital_code(hospital_subdomain)}-{config.prefix}-{padded}"
    # prefix_number / custom
    return f"{config.prefix}{padded}"


def _render(config: HospitalIdConfig, number: int, context: IntakeContext, today: Optional[date]) -> str:
    return format_patient_id(
        config,
        number,
        hospital_subdomain=context.hospital.subdomain,
        year=(today or date.today()).year,
    )


def preview(config: HospitalIdConfig, context: IntakeContext, today: Optional[date] = None) -> str:
    """下一位患者将拿到的编号。不消耗序号。"""
    return _render(config, max(config.last_sequence_number, 0) + 1, context, today)


def current_tail(config: HospitalIdConfig, context: IntakeContext, today: Optional[date] = None) -> str:
    """最近一次已分配的编号（设置页「Last Used Number」旁的展示）。"""
    return _render(config, max(config.last_sequence_number, 0), context, today)


def next_sequence_number(config: HospitalIdConfig, manual_number: Optional[int] = None) -> int:
    """
    计算本次要消耗的序号。

    auto_increment 开启时忽略 manual_number，取 last + 1；
    关闭时必须手动给出，且必须大于 last（序号只增不减）。
    """
    if config.auto_increment:
        return _check_capacity(config.last_sequence_number + 1, "patient_id_last_number")

    if manual_number is None:
        raise ValidationError(
            message="Automatic numbering is disabled for this hospital; a sequence number must be supplied.",
            code='MANUAL_SEQUENCE_REQUIRED',
            detail={'field': 'manualSequenceNumber'},
        )
    if manual_number <= config.last_sequence_number:
        raise ValidationError(
            message=(
                f"Sequence number {manual_number} has already been used; "
                f"it must be greater than {config.last_sequence_number}."
            ),
            code='SEQUENCE_NOT_INCREASING',
            detail={'field': 'manualSequenceNumber', 'last_sequence_number': config.last_sequence_number},
        )
    return _check_capacity(manual_number, 'manualSequenceNumber')


def _check_capacity(number: int, field: str) -> int:
    if number > MAX_SEQUENCE_NUMBER:
        raise ValidationError(
            message=f"Sequence number {number} exceeds the maximum of {MAX_SEQUENCE_NUMBER}.",
            code='SEQUENCE_OUT_OF_RANGE',
            detail={'field': field, 'max': MAX_SEQUENCE_NUMBER},
        )
    return number


def allocate(
    config: HospitalIdConfig,
    context: IntakeContext,
    manual_number: Optional[int] = None,
    today: Optional[date] = None,
) -> tuple[str, HospitalIdConfig]:
    number = next_sequence_number(config, manual_number)
    formatted = _render(config, number, context, today)
    return formatted, replace(config, last_sequence_number=number)


def validate_config(config: HospitalIdConfig, hospital_subdomain: str = "") -> list[FieldError]:
    """保存设置时的校验；分配编号时不再重复检查。"""
    errors = []

    try:
        template = IdFormat(config.format_template)
    except ValueError:
        template = None
        errors.append(FieldError(
            "patient_id_format", "invalid_choice",
            f"Unknown ID format: {config.format_template!r}",
        ))

    if not (config.prefix or "").strip():
        errors.append(FieldError("patient_id_prefix", "required", "Patient ID prefix cannot be empty"))
    elif len(config.prefix) > MAX_PREFIX_LENGTH:
        errors.append(FieldError(
            "patient_id_prefix", "too_long", f"Patient ID prefix cannot exceed {MAX_PREFIX_LENGTH} characters",
        ))

    if not isinstance(config.digit_width, int) or not MIN_DIGITS <= config.digit_width <= MAX_DIGITS:
        errors.append(FieldError(
            "patient_id_digits", "out_of_range",
            f"Number of digits must be between {MIN_DIGITS} and {MAX_DIGITS}",
        ))

    if not isinstance(config.last_sequence_number, int) or not 0 <= config.last_sequence_number <= MAX_SEQUENCE_NUMBER:
        errors.append(FieldError(
            "patient_id_last_number", "out_of_range",
            f"Last used number must be between 0 and {MAX_SEQUENCE_NUMBER}",
        ))

    if template == IdFormat.HOSPITAL_PREFIX_NUMBER:
        letters = [c for c in (hospital_subdomain or "")[:2] if c.isalpha()]
        if len(letters) < 2:
            errors.append(FieldError(
                "patient_id_format", "invalid_choice",
                "Hospital code format needs a subdomain starting with two letters",
            ))

    return errors
