# SPDX-License-Identifier: Apache-2.0

"""
State machine of the passwordless login flow.

PHONE -> OTP_PENDING -> VERIFIED -> PROFILE_PENDING (new profiles) -> DONE.
Any state may restart to PHONE. The state is small and client-visible: the
current step plus the sid (and user id once tokens are issued).
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional, Tuple

from models.enums import AuthStep, NextStep


class FlowAction(str, Enum):
    """Actions that move the login flow between steps."""
    REQUEST_OTP = "request_otp"
    RESEND_OTP = "resend_otp"
    VERIFY_OK = "verify_ok"
    VERIFY_REJECTED = "verify_rejected"
    SESSION_LOST = "session_lost"
    ISSUE_PROFILE_PENDING = "issue_profile_pending"
    ISSUE_DONE = "issue_done"
    COMPLETE_PROFILE = "complete_profile"
    RESTART = "restart"


class IllegalTransition(Exception):
    """Raised when an action is not allowed from the current step."""

    def __init__(self, step: AuthStep, action: FlowAction):
        super().__init__(f"Action {action.value} not allowed from step {step.value}")
        self.step = step
        self.action = action


TRANSITIONS: Dict[Tuple[AuthStep, FlowAction], AuthStep] = {
    (AuthStep.PHONE, FlowAction.REQUEST_OTP): AuthStep.OTP_PENDING,
    (AuthStep.OTP_PENDING, FlowAction.REQUEST_OTP): AuthStep.OTP_PENDING,
    (AuthStep.OTP_PENDING, FlowAction.RESEND_OTP): AuthStep.OTP_PENDING,
    (AuthStep.OTP_PENDING, FlowAction.VERIFY_OK): AuthStep.VERIFIED,
    (AuthStep.OTP_PENDING, FlowAction.VERIFY_REJECTED): AuthStep.OTP_PENDING,
    (AuthStep.OTP_PENDING, FlowAction.SESSION_LOST): AuthStep.PHONE,
    (AuthStep.VERIFIED, FlowAction.ISSUE_PROFILE_PENDING): AuthStep.PROFILE_PENDING,
    (AuthStep.VERIFIED, FlowAction.ISSUE_DONE): AuthStep.DONE,
    (AuthStep.VERIFIED, FlowAction.SESSION_LOST): AuthStep.PHONE,
    (AuthStep.PROFILE_PENDING, FlowAction.COMPLETE_PROFILE): AuthStep.DONE,
}

_NEXT_STEP = {
    AuthStep.PHONE: NextStep.PHONE,
    AuthStep.OTP_PENDING: NextStep.OTP_VERIFY,
    AuthStep.VERIFIED: NextStep.OTP_VERIFY,
    AuthStep.PROFILE_PENDING: NextStep.ONBOARDING,
    AuthStep.DONE: NextStep.HOME,
}


@dataclass(frozen=True)
class AuthFlowState:
    """Client-resumable position in the login flow."""
    step: AuthStep = AuthStep.PHONE
    sid: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def next_step(self) -> NextStep:
        return _NEXT_STEP[self.step]


def can_transition(step: AuthStep, action: FlowAction) -> bool:
    """Check whether an action is legal from a step."""
    return action == FlowAction.RESTART or (step, action) in TRANSITIONS


def transition(state: AuthFlowState, action: FlowAction, **changes) -> AuthFlowState:
    """
    Apply an action to a flow state.

    Args:
        state: Current flow state
        action: Action to apply
        **changes: Field updates (sid, user_id) carried into the new state

    Returns:
        New flow state

    Raises:
        IllegalTransition: If the action is not allowed from the current step
    """
    if action == FlowAction.RESTART:
        return AuthFlowState()

    target = TRANSITIONS.get((state.step, action))
    if target is None:
        raise IllegalTransition(state.step, action)

    if target == AuthStep.PHONE:
        return AuthFlowState()

    return replace(state, step=target, **changes)


def initial_state() -> AuthFlowState:
    """Flow state before any phone has been submitted."""
    return AuthFlowState()
