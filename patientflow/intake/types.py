"""
Intake 层的标准数据结构。

表单 adapter 的 transform() 产出 PatientDraft；
classifier / validator / flow router / numbering 只消费这里定义的类型，
永远不碰原始表单数据，也不依赖 Django。
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Optional, Union


class RegistrationCategory(str, Enum):
    NEW = "new"
    RETURNING = "returning"
    EMERGENCY = "emergency"


class PriorityLevel(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    PriorityLevel.NORMAL: 0,
    PriorityLevel.URGENT: 1,
    PriorityLevel.CRITICAL: 2,
}


class FlowStep(str, Enum):
    REGISTRATION = "registration"
    TRIAGE = "triage"
    WAITING_CONSULTATION = "waiting_consultation"
    CONSULTATION = "consultation"
    EMERGENCY = "emergency"
    POST_CONSULTATION = "post_consultation"
    PHARMACY = "pharmacy"
    BILLING = "billing"
    DISCHARGED = "discharged"


class PaymentMethod(str, Enum):
    CASH = "cash"
    INSURANCE = "insurance"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    MOBILE_PAYMENT = "mobile_payment"


class IdFormat(str, Enum):
    PREFIX_NUMBER = "prefix_number"
    PREFIX_YEAR_NUMBER = "prefix_year_number"
    HOSPITAL_PREFIX_NUMBER = "hospital_prefix_number"
    CUSTOM = "custom"


class Gender(str, Enum):
    MALE = "Male"
    FEMALE = "Female"
    OTHER = "Other"


# ── 支付方式 tagged union ──────────────────────────────────────────────────
#
# 每个变体只带自己的子字段；validator 按 method 穷举检查。

@dataclass(frozen=True)
class CashPayment:
    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.CASH


@dataclass(frozen=True)
class InsurancePayment:
    insurance_provider: Optional[str] = None
    policy_number: Optional[str] = None
    expiry_date: Optional[str] = None

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.INSURANCE


@dataclass(frozen=True)
class CardPayment:
    # credit_card / debit_card 共用同一组子字段
    kind: PaymentMethod = PaymentMethod.CREDIT_CARD
    card_type: Optional[str] = None
    last_four_digits: Optional[str] = None

    @property
    def method(self) -> PaymentMethod:
        return self.kind


@dataclass(frozen=True)
class MobilePayment:
    mobile_provider: Optional[str] = None
    mobile_number: Optional[str] = None
    transaction_id: Optional[str] = None

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.MOBILE_PAYMENT


Payment = Union[CashPayment, InsurancePayment, CardPayment, MobilePayment]


@dataclass(frozen=True)
class EmergencyContact:
    name: Optional[str] = None
    relationship: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class PatientDraft:
    """
    登记表单提交的标准格式。

    除 first_name / last_name 外所有字段都可能为空，
    是否必填由 validator 按 registration_category 决定。
    """

    registration_category: RegistrationCategory
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    requested_priority: PriorityLevel = PriorityLevel.NORMAL
    id_number: Optional[str] = None
    date_of_birth: Optional[date] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    contact_number: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    emergency_contact: EmergencyContact = field(default_factory=EmergencyContact)
    payment: Payment = field(default_factory=CashPayment)
    manual_sequence_number: Optional[int] = None
    raw_payload: Any = field(default=None, repr=False)


@dataclass(frozen=True)
class Classification:
    registration_category: RegistrationCategory
    effective_priority: PriorityLevel

    @property
    def is_emergency(self) -> bool:
        return (
            self.registration_category == RegistrationCategory.EMERGENCY
            or self.effective_priority == PriorityLevel.CRITICAL
        )


@dataclass(frozen=True)
class HospitalIdConfig:
    format_template: IdFormat = IdFormat.PREFIX_NUMBER
    prefix: str = "PT"
    digit_width: int = 6
    last_sequence_number: int = 0
    auto_increment: bool = True


@dataclass(frozen=True)
class HospitalRef:
    id: Any
    name: str = ""
    subdomain: str = ""


@dataclass(frozen=True)
class IntakeContext:
    """当前请求所属的医院和操作人，显式传入，不读全局状态。"""

    hospital: HospitalRef
    user_id: Any = None


@dataclass(frozen=True)
class FieldError:
    field: str
    code: str
    message: str

    def as_dict(self) -> dict:
        return {"field": self.field, "code": self.code, "message": self.message}


@dataclass
class ValidationResult:
    errors: list[FieldError] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def fields(self) -> set[str]:
        return {e.field for e in self.errors}

    def as_dict(self) -> dict:
        return {"valid": self.valid, "errors": [e.as_dict() for e in self.errors]}
