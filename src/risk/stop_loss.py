"""
Dynamic stop-loss by leverage.

Higher leverage turns a given price move into a bigger equity move, so the
forced-close line tightens as leverage rises. This is the last-resort net
under every open position; regular exits are the agent's job.
"""

# (minimum leverage, stop-loss %) - first match wins, highest leverage first
STOP_LOSS_BANDS = (
    (20, -15.0),
    (15, -18.0),
    (10, -22.0),
    (5, -25.0),
)
LOW_LEVERAGE_STOP_LOSS = -30.0


def get_dynamic_stop_loss(leverage: float) -> float:
    """
    Stop-loss threshold (negative %, leveraged PnL) for a position.

    >= 20x: -15%, 15-19x: -18%, 10-14x: -22%, 5-9x: -25%, below 5x: -30%
    """
    for min_leverage, stop_loss in STOP_LOSS_BANDS:
        if leverage >= min_leverage:
            return stop_loss
    return LOW_LEVERAGE_STOP_LOSS


def should_force_close(pnl_percent: float, leverage: float) -> bool:
    """True once leveraged PnL has fallen to or through the dynamic stop."""
    return pnl_percent <= get_dynamic_stop_loss(leverage)
