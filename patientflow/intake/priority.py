"""
PriorityClassifier — 根据登记类型得出有效优先级。

急诊登记一律 critical，忽略表单里选的优先级；其余原样返回。
"""

from .types import Classification, PatientDraft, PriorityLevel, RegistrationCategory


def classify(category: RegistrationCategory, requested_priority: PriorityLevel) -> PriorityLevel:
    if category == RegistrationCategory.EMERGENCY:
        return PriorityLevel.CRITICAL
    return requested_priority


def classify_draft(draft: PatientDraft) -> Classification:
    return Classification(
        registration_category=draft.registration_category,
        effective_priority=classify(draft.registration_category, draft.requested_priority),
    )


def escalate(current: PriorityLevel, proposed: PriorityLevel) -> PriorityLevel:
    """返回两者中更紧急的那个。优先级只升不降。"""
    if proposed.severity > current.severity:
        return proposed
    return current
