"""
RegistrationFormAdapter — 登记表单 JSON → PatientDraft。

外部格式示例（前端登记向导提交的 camelCase JSON）:
{
  "registrationType": "new",              ← new / returning / emergency
  "idNumber":         "A1234567",
  "firstName":        "Jane",
  "lastName":         "Doe",
  "dateOfBirth":      "1985-03-20",       ← ISO 8601
  "age":              40,
  "gender":           "Female",
  "contactNumber":    "+1 555 0100",
  "email":            "jane@example.com",
  "address":          "12 Main St",
  "emergencyContact": { "name": "John Doe", "relationship": "Spouse", "phone": "+1 555 0101" },
  "priorityLevel":    "normal",
  "paymentMethod":    "credit_card",
  "paymentDetails":   { "cardType": "visa", "lastFourDigits": "4242" },
  "manualSequenceNumber": null           ← 仅在医院关闭自动编号时使用
}

三步流水线：parse → transform → validate。
- 结构性错误（不是 JSON、枚举值越界）直接抛 ValidationError(MALFORMED_PAYLOAD)
- 字段级错误（必填缺失、格式不符、日期写错）全部收集进 ValidationResult
"""

import json
from datetime import date
from typing import Any, Optional

from ..exceptions import ValidationError
from .types import (
    CardPayment,
    CashPayment,
    EmergencyContact,
    FieldError,
    InsurancePayment,
    MobilePayment,
    Payment,
    PatientDraft,
    PaymentMethod,
    PriorityLevel,
    RegistrationCategory,
    ValidationResult,
)
from .validator import validate


def _text(raw: dict, key: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _enum(enum_cls, value: Any, field: str, default=None):
    if value in (None, ""):
        if default is None:
            raise ValidationError(
                message=f"{field} is required.",
                code='MALFORMED_PAYLOAD',
                detail={'field': field},
            )
        return default
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(
            message=f"Invalid {field}: {value!r}.",
            code='MALFORMED_PAYLOAD',
            detail={'field': field, 'allowed': [e.value for e in enum_cls]},
        )


class RegistrationFormAdapter:
    source = "registration_form"

    def __init__(self, raw_body: bytes | str | dict, today: Optional[date] = None):
        self._raw_body = raw_body
        self._today = today
        self._parsed: dict = {}
        # transform 阶段发现的字段格式错误，和 validate 的结果合并
        self._format_errors: list[FieldError] = []

    def parse(self) -> dict:
        if isinstance(self._raw_body, dict):
            raw = self._raw_body
        else:
            try:
                raw = json.loads(self._raw_body or b"{}")
            except (TypeError, ValueError) as exc:
                raise ValidationError(
                    message="Request body is not valid JSON.",
                    code='MALFORMED_PAYLOAD',
                    detail={'error': str(exc)},
                )
        if not isinstance(raw, dict):
            raise ValidationError(
                message="Request body must be a JSON object.",
                code='MALFORMED_PAYLOAD',
            )
        self._parsed = raw
        return raw

    def _date(self, key: str) -> Optional[date]:
        value = _text(self._parsed, key)
        if value is None:
            return None
        try:
            return date.fromisoformat(value)
        except ValueError:
            self._format_errors.append(FieldError(key, "invalid_format", "Date must be in YYYY-MM-DD format"))
            return None

    def _int(self, key: str) -> Optional[int]:
        value = self._parsed.get(key)
        if value in (None, ""):
            return None
        # true/false 和 41.9 这种带小数的值都不接受，int() 会静默截断
        if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
            value = None
        try:
            return int(value)
        except (TypeError, ValueError):
            self._format_errors.append(FieldError(key, "invalid_format", "Must be a whole number"))
            return None

    def _payment(self) -> Payment:
        method = _enum(PaymentMethod, self._parsed.get("paymentMethod"), "paymentMethod", PaymentMethod.CASH)
        details = self._parsed.get("paymentDetails") or {}
        if not isinstance(details, dict):
            details = {}

        if method == PaymentMethod.INSURANCE:
            return InsurancePayment(
                insurance_provider=_text(details, "insuranceProvider"),
                policy_number=_text(details, "policyNumber"),
                expiry_date=_text(details, "expiryDate"),
            )
        if method in (PaymentMethod.CREDIT_CARD, PaymentMethod.DEBIT_CARD):
            return CardPayment(
                kind=method,
                card_type=_text(details, "cardType"),
                last_four_digits=_text(details, "lastFourDigits"),
            )
        if method == PaymentMethod.MOBILE_PAYMENT:
            return MobilePayment(
                mobile_provider=_text(details, "mobileProvider"),
                mobile_number=_text(details, "mobileNumber"),
                transaction_id=_text(details, "transactionId"),
            )
        return CashPayment()

    def transform(self) -> PatientDraft:
        raw = self._parsed
        contact = raw.get("emergencyContact") or {}
        if not isinstance(contact, dict):
            contact = {}

        return PatientDraft(
            registration_category=_enum(RegistrationCategory, raw.get("registrationType"), "registrationType"),
            requested_priority=_enum(PriorityLevel, raw.get("priorityLevel"), "priorityLevel", PriorityLevel.NORMAL),
            id_number=_text(raw, "idNumber"),
            first_name=_text(raw, "firstName"),
            last_name=_text(raw, "lastName"),
            date_of_birth=self._date("dateOfBirth"),
            age=self._int("age"),
            gender=_text(raw, "gender"),
            contact_number=_text(raw, "contactNumber"),
            email=_text(raw, "email"),
            address=_text(raw, "address"),
            emergency_contact=EmergencyContact(
                name=_text(contact, "name"),
                relationship=_text(contact, "relationship"),
                phone=_text(contact, "phone"),
            ),
            payment=self._payment(),
            manual_sequence_number=self._int("manualSequenceNumber"),
            raw_payload=raw,
        )

    def validate(self, draft: PatientDraft) -> ValidationResult:
        result = validate(draft, today=self._today)
        # 格式写错的字段也会被判为「必填缺失」，只保留更具体的格式错误
        bad_format = {e.field for e in self._format_errors}
        result.errors = self._format_errors + [e for e in result.errors if e.field not in bad_format]
        return result

    def process(self) -> tuple[PatientDraft, ValidationResult]:
        """parse → transform → validate，返回草稿和（可能非空的）错误列表。"""
        self.parse()
        draft = self.transform()
        return draft, self.validate(draft)
