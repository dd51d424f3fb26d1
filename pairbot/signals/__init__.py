from pairbot.signals.signal import (
    InvalidSignal,
    Signal,
    SignalKind,
    parse_signal_string,
    signal_from_payload,
)

__all__ = ["InvalidSignal", "Signal", "SignalKind", "parse_signal_string", "signal_from_payload"]
