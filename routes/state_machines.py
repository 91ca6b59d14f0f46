"""
Transition tables for agreements and liquidations.

Every state change in the engine goes through ``next_agreement_state`` or
``next_liquidation_state``; a (state, event) pair missing from the table is an
InvalidTransition and the caller must leave the entity untouched.
"""
import enum

from models import AgreementState, LiquidationState
from routes.errors import InvalidTransition, ValidationError


class AgreementEvent(str, enum.Enum):
    ACTIVATE = 'activate'
    PAUSE = 'pause'
    TERMINATE = 'terminate'


class LiquidationEvent(str, enum.Enum):
    CONFIRM = 'confirm'
    PAY = 'pay'
    CANCEL = 'cancel'


AGREEMENT_TRANSITIONS = {
    (AgreementState.DRAFT, AgreementEvent.ACTIVATE): AgreementState.ACTIVE,
    (AgreementState.ACTIVE, AgreementEvent.PAUSE): AgreementState.PAUSED,
    (AgreementState.PAUSED, AgreementEvent.ACTIVATE): AgreementState.ACTIVE,
    (AgreementState.ACTIVE, AgreementEvent.TERMINATE): AgreementState.TERMINATED,
    (AgreementState.PAUSED, AgreementEvent.TERMINATE): AgreementState.TERMINATED,
}

LIQUIDATION_TRANSITIONS = {
    (LiquidationState.DRAFT, LiquidationEvent.CONFIRM): LiquidationState.CONFIRMED,
    (LiquidationState.CONFIRMED, LiquidationEvent.PAY): LiquidationState.PAID,
    (LiquidationState.DRAFT, LiquidationEvent.CANCEL): LiquidationState.CANCELLED,
    (LiquidationState.CONFIRMED, LiquidationEvent.CANCEL): LiquidationState.CANCELLED,
}

# Stock may only move in or back out while the relationship is live
LIVE_AGREEMENT_STATES = frozenset({AgreementState.ACTIVE, AgreementState.PAUSED})

# Liquidations that still own their attached sales
OPEN_LIQUIDATION_STATES = frozenset({
    LiquidationState.DRAFT, LiquidationState.CONFIRMED, LiquidationState.PAID,
})


def _coerce_event(event_cls, event):
    if isinstance(event, event_cls):
        return event
    try:
        return event_cls(str(event).strip().lower())
    except ValueError:
        allowed = ', '.join(e.value for e in event_cls)
        raise ValidationError(f'Unknown event {event!r}; expected one of: {allowed}', field='event')


def parse_agreement_event(event):
    return _coerce_event(AgreementEvent, event)


def parse_liquidation_event(event):
    return _coerce_event(LiquidationEvent, event)


def next_agreement_state(state, event):
    event = _coerce_event(AgreementEvent, event)
    try:
        return AGREEMENT_TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(
            f'Cannot {event.value} an agreement in state {state.value}',
            state=state.value, event=event.value,
        )


def next_liquidation_state(state, event):
    event = _coerce_event(LiquidationEvent, event)
    try:
        return LIQUIDATION_TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(
            f'Cannot {event.value} a liquidation in state {state.value}',
            state=state.value, event=event.value,
        )
