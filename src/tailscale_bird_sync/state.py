from enum import Enum


class ReconcilerState(Enum):
    """
    What we believe the BIRD protocol state to be.

    The value always reflects the last *successfully applied* control verb.
    UNKNOWN is the start-up state and is never re-entered.
    """
    UNKNOWN = "unknown"
    ENABLED = "enabled"
    DISABLED = "disabled"


class ControlVerb(Enum):
    """Commands issued to the routing daemon for the configured protocol."""
    ENABLE = "enable"
    DISABLE = "disable"


# State reached once a verb has been applied successfully
VERB_RESULT_STATE = {
    ControlVerb.ENABLE: ReconcilerState.ENABLED,
    ControlVerb.DISABLE: ReconcilerState.DISABLED,
}


def determine_control_verb(state: ReconcilerState, primary_router: bool):
    """
    Decide which control verb, if any, brings BIRD in line with the signal.

    Transition table:
      primary_router=True,  state UNKNOWN/DISABLED -> ENABLE
      primary_router=False, state UNKNOWN/ENABLED  -> DISABLE
      signal already matches state                 -> None (no call)

    Args:
        state (ReconcilerState): Last successfully applied state.
        primary_router (bool): Liveness signal for this tick.

    Returns:
        ControlVerb or None: The verb to issue, None when nothing needs doing.
    """
    if primary_router:
        return None if state is ReconcilerState.ENABLED else ControlVerb.ENABLE
    return None if state is ReconcilerState.DISABLED else ControlVerb.DISABLE
