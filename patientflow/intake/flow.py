"""
FlowRouter — 患者就诊流程状态机。

    registration ──► triage ──────────► waiting_consultation ──► consultation
         │             │                        ▲                     │
         │             ▼                        │                     ▼
         └─────────► emergency ─────────────────┘             post_consultation
                                                                 │        │
                                                                 ▼        ▼
                                                             pharmacy ◄─► billing

任意步骤都可以直接 → discharged（行政出院），其余跳步一律拒绝。

纯函数：只根据 (current, classification[, target]) 计算，不读写任何存储。
"""

from typing import Optional

from ..exceptions import InvalidTransitionError
from .types import Classification, FlowStep

_TRANSITIONS: dict[FlowStep, frozenset[FlowStep]] = {
    # registration 的目标由分类决定，见 allowed_targets()
    FlowStep.REGISTRATION: frozenset({FlowStep.TRIAGE, FlowStep.EMERGENCY}),
    # 分诊时发现急症可以升级到 emergency
    FlowStep.TRIAGE: frozenset({FlowStep.WAITING_CONSULTATION, FlowStep.EMERGENCY}),
    FlowStep.EMERGENCY: frozenset({FlowStep.WAITING_CONSULTATION}),
    FlowStep.WAITING_CONSULTATION: frozenset({FlowStep.CONSULTATION}),
    FlowStep.CONSULTATION: frozenset({FlowStep.POST_CONSULTATION}),
    # 取药和缴费是两个可选的并行子流程，先后不限
    FlowStep.POST_CONSULTATION: frozenset({FlowStep.PHARMACY, FlowStep.BILLING}),
    FlowStep.PHARMACY: frozenset({FlowStep.BILLING}),
    FlowStep.BILLING: frozenset({FlowStep.PHARMACY}),
    FlowStep.DISCHARGED: frozenset(),
}

_DEFAULT_NEXT: dict[FlowStep, FlowStep] = {
    FlowStep.TRIAGE: FlowStep.WAITING_CONSULTATION,
    FlowStep.EMERGENCY: FlowStep.WAITING_CONSULTATION,
    FlowStep.WAITING_CONSULTATION: FlowStep.CONSULTATION,
    FlowStep.CONSULTATION: FlowStep.POST_CONSULTATION,
}


def allowed_targets(current: FlowStep, classification: Classification) -> frozenset[FlowStep]:
    if current == FlowStep.REGISTRATION:
        entry = FlowStep.EMERGENCY if classification.is_emergency else FlowStep.TRIAGE
        return frozenset({entry, FlowStep.DISCHARGED})
    return _TRANSITIONS[current] | {FlowStep.DISCHARGED}


def default_next_step(current: FlowStep, classification: Classification) -> Optional[FlowStep]:
    """
    线性后继。

    post_consultation / pharmacy / billing 的去向取决于有没有处方和收费项目，
    必须由调用方显式给出 target，这里返回 None。
    """
    if current == FlowStep.REGISTRATION:
        return FlowStep.EMERGENCY if classification.is_emergency else FlowStep.TRIAGE
    return _DEFAULT_NEXT.get(current)


def next_step(
    current: FlowStep,
    classification: Classification,
    target: Optional[FlowStep] = None,
) -> FlowStep:
    """
    计算下一步。

    Args:
        current:        患者当前步骤
        classification: PriorityClassifier 的结果
        target:         显式目标；为 None 时走默认后继

    Raises:
        InvalidTransitionError: 状态机不允许该跳转，或当前步骤没有默认后继
    """
    if target is None:
        resolved = default_next_step(current, classification)
        if resolved is None:
            raise InvalidTransitionError(
                current,
                None,
                message=f"Step '{current.value}' has no default next step; an explicit target is required.",
                code='TARGET_REQUIRED',
                detail={
                    'current_step': current.value,
                    'allowed_targets': sorted(s.value for s in allowed_targets(current, classification)),
                },
            )
        return resolved

    if target not in allowed_targets(current, classification):
        raise InvalidTransitionError(
            current,
            target,
            detail={
                'current_step': current.value,
                'target_step': target.value,
                'allowed_targets': sorted(s.value for s in allowed_targets(current, classification)),
            },
        )
    return target
