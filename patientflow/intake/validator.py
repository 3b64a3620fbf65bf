"""
IntakeValidator — 按登记类型决定必填字段，并做结构校验。

规则：
- emergency：只有 firstName / lastName 必填，其余全部可选（包括支付子字段）
- new / returning：个人信息、联系方式、紧急联系人三项全部必填
- 支付子字段按 paymentMethod 条件必填（急诊除外）
- email / lastFourDigits 只要填了就必须符合格式
- 文本字段不能超过数据库列长度（too_long）

validate() 收集所有错误后一次性返回，永远不抛异常；
是否阻止提交由调用方决定。

登记向导的「急诊跳过优先级步骤」也放在这里，和必填规则共用同一个分类判断，
避免 view 层各自重复一遍。
"""

import re
from datetime import date
from typing import Any, Callable, Optional

from .types import (
    CardPayment,
    CashPayment,
    FieldError,
    Gender,
    InsurancePayment,
    MobilePayment,
    Payment,
    PatientDraft,
    PaymentMethod,
    RegistrationCategory,
    ValidationResult,
)

# ── 共用校验正则 ──────────────────────────────────────────────────────────
EMAIL_RE = re.compile(r"^[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}$", re.IGNORECASE)
LAST_FOUR_RE = re.compile(r"^\d{4}$")

CARD_TYPES = frozenset({"visa", "mastercard", "amex", "discover", "other"})
MOBILE_PROVIDERS = frozenset({"apple_pay", "google_pay", "samsung_pay", "venmo", "paypal", "other"})
MAX_AGE = 150

NAME_FIELDS = frozenset({"firstName", "lastName"})
FULL_REGISTRATION_FIELDS = NAME_FIELDS | frozenset({
    "dateOfBirth",
    "gender",
    "contactNumber",
    "address",
    "emergencyContact.name",
    "emergencyContact.relationship",
    "emergencyContact.phone",
})

_PAYMENT_FIELDS = {
    PaymentMethod.CASH: frozenset(),
    PaymentMethod.INSURANCE: frozenset({"paymentDetails.insuranceProvider", "paymentDetails.policyNumber"}),
    PaymentMethod.CREDIT_CARD: frozenset({"paymentDetails.cardType", "paymentDetails.lastFourDigits"}),
    PaymentMethod.DEBIT_CARD: frozenset({"paymentDetails.cardType", "paymentDetails.lastFourDigits"}),
    PaymentMethod.MOBILE_PAYMENT: frozenset({"paymentDetails.mobileProvider"}),
}

_MESSAGES = {
    "firstName": "First name is required",
    "lastName": "Last name is required",
    "dateOfBirth": "Date of birth is required",
    "gender": "Gender is required",
    "contactNumber": "Phone number is required",
    "address": "Address is required",
    "emergencyContact.name": "Emergency contact name is required",
    "emergencyContact.relationship": "Relationship is required",
    "emergencyContact.phone": "Emergency contact phone is required",
    "paymentDetails.insuranceProvider": "Insurance provider is required",
    "paymentDetails.policyNumber": "Policy number is required",
    "paymentDetails.cardType": "Card type is required",
    "paymentDetails.lastFourDigits": "Last 4 digits are required",
    "paymentDetails.mobileProvider": "Provider is required",
}

# 表单字段名 → 从 PatientDraft 取值的函数
_GETTERS: dict[str, Callable[[PatientDraft], Any]] = {
    "firstName": lambda d: d.first_name,
    "lastName": lambda d: d.last_name,
    "dateOfBirth": lambda d: d.date_of_birth,
    "gender": lambda d: d.gender,
    "contactNumber": lambda d: d.contact_number,
    "address": lambda d: d.address,
    "emergencyContact.name": lambda d: d.emergency_contact.name,
    "emergencyContact.relationship": lambda d: d.emergency_contact.relationship,
    "emergencyContact.phone": lambda d: d.emergency_contact.phone,
    "paymentDetails.insuranceProvider": lambda d: getattr(d.payment, "insurance_provider", None),
    "paymentDetails.policyNumber": lambda d: getattr(d.payment, "policy_number", None),
    "paymentDetails.cardType": lambda d: getattr(d.payment, "card_type", None),
    "paymentDetails.lastFourDigits": lambda d: getattr(d.payment, "last_four_digits", None),
    "paymentDetails.mobileProvider": lambda d: getattr(d.payment, "mobile_provider", None),
}


# 与 models.Patient 的 max_length 对应，超长的值写库时会被数据库拒绝
_MAX_LENGTHS: dict[str, tuple[int, Callable[[PatientDraft], Any]]] = {
    "firstName": (100, lambda d: d.first_name),
    "lastName": (100, lambda d: d.last_name),
    "idNumber": (50, lambda d: d.id_number),
    "contactNumber": (40, lambda d: d.contact_number),
    "email": (254, lambda d: d.email),
}


def required_fields(category: RegistrationCategory) -> frozenset[str]:
    if category == RegistrationCategory.EMERGENCY:
        return NAME_FIELDS
    return FULL_REGISTRATION_FIELDS


def payment_required_fields(method: PaymentMethod) -> frozenset[str]:
    return _PAYMENT_FIELDS[method]


def required_fields_for(draft: PatientDraft) -> frozenset[str]:
    """该草稿实际生效的必填字段（登记类型 + 支付方式）。"""
    fields = required_fields(draft.registration_category)
    if draft.registration_category != RegistrationCategory.EMERGENCY:
        fields = fields | payment_required_fields(draft.payment.method)
    return fields


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def validate(draft: PatientDraft, today: Optional[date] = None) -> ValidationResult:
    today = today or date.today()
    result = ValidationResult()

    # 按固定顺序输出，前端展示更稳定
    for name in sorted(required_fields_for(draft)):
        if not _present(_GETTERS[name](draft)):
            result.errors.append(FieldError(name, "required", _MESSAGES[name]))

    _check_personal(draft, today, result)
    _check_payment(draft.payment, result)
    return result


def _check_personal(draft: PatientDraft, today: date, result: ValidationResult) -> None:
    for name, (limit, getter) in _MAX_LENGTHS.items():
        value = getter(draft)
        if isinstance(value, str) and len(value) > limit:
            result.errors.append(FieldError(name, "too_long", f"Must be at most {limit} characters"))

    if _present(draft.email) and not EMAIL_RE.match(draft.email.strip()):
        result.errors.append(FieldError("email", "pattern_mismatch", "Invalid email address"))

    if _present(draft.gender) and draft.gender not in {g.value for g in Gender}:
        result.errors.append(FieldError(
            "gender", "invalid_choice", f"Gender must be one of: {', '.join(g.value for g in Gender)}",
        ))

    if draft.age is not None and not 0 <= draft.age <= MAX_AGE:
        result.errors.append(FieldError("age", "out_of_range", f"Age must be between 0 and {MAX_AGE}"))

    if draft.date_of_birth is not None and draft.date_of_birth > today:
        result.errors.append(FieldError("dateOfBirth", "out_of_range", "Date of birth cannot be in the future"))


def _check_payment(payment: Payment, result: ValidationResult) -> None:
    # 只校验「填了的」子字段格式；缺失由 required 规则负责
    if isinstance(payment, CardPayment):
        digits = payment.last_four_digits
        if _present(digits) and not LAST_FOUR_RE.match(digits.strip()):
            result.errors.append(FieldError(
                "paymentDetails.lastFourDigits", "pattern_mismatch", "Must be exactly 4 digits",
            ))
        if _present(payment.card_type) and payment.card_type not in CARD_TYPES:
            result.errors.append(FieldError(
                "paymentDetails.cardType", "invalid_choice", f"Unknown card type: {payment.card_type!r}",
            ))
    elif isinstance(payment, MobilePayment):
        if _present(payment.mobile_provider) and payment.mobile_provider not in MOBILE_PROVIDERS:
            result.errors.append(FieldError(
                "paymentDetails.mobileProvider", "invalid_choice",
                f"Unknown mobile provider: {payment.mobile_provider!r}",
            ))
    elif isinstance(payment, (CashPayment, InsurancePayment)):
        pass
    else:
        raise TypeError(f"Unhandled payment variant: {type(payment).__name__}")


# ── 登记向导步骤 ──────────────────────────────────────────────────────────
#
# 1 登记类型 → 2 个人信息 → 3 联系方式 → 4 优先级 → 5 支付与确认
# 急诊登记的优先级固定为 critical，第 4 步不显示。

WIZARD_STEPS = (
    (1, "registration_type"),
    (2, "personal"),
    (3, "contact"),
    (4, "priority"),
    (5, "payment_review"),
)
PRIORITY_STEP = 4


def wizard_steps(category: RegistrationCategory) -> list[dict]:
    return [
        {"step": number, "name": name}
        for number, name in WIZARD_STEPS
        if not (number == PRIORITY_STEP and category == RegistrationCategory.EMERGENCY)
    ]


def next_wizard_step(category: RegistrationCategory, current: int) -> int:
    visible = [s["step"] for s in wizard_steps(category)]
    later = [s for s in visible if s > current]
    return later[0] if later else visible[-1]


def previous_wizard_step(category: RegistrationCategory, current: int) -> int:
    visible = [s["step"] for s in wizard_steps(category)]
    earlier = [s for s in visible if s < current]
    return earlier[-1] if earlier else visible[0]
