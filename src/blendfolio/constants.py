from __future__ import annotations

# On-chain amounts are 7-decimal fixed point (Stellar / Soroban token units)
SCALAR_7 = 10_000_000

# Lending pool action types
SUPPLY = "supply"
WITHDRAW = "withdraw"
SUPPLY_COLLATERAL = "supply_collateral"
WITHDRAW_COLLATERAL = "withdraw_collateral"
BORROW = "borrow"
REPAY = "repay"
CLAIM = "claim"

BALANCE_ACTIONS: tuple[str, ...] = (
    SUPPLY,
    WITHDRAW,
    SUPPLY_COLLATERAL,
    WITHDRAW_COLLATERAL,
    BORROW,
    REPAY,
)
POOL_DEPOSIT_ACTIONS: tuple[str, ...] = (SUPPLY, SUPPLY_COLLATERAL)
POOL_WITHDRAW_ACTIONS: tuple[str, ...] = (WITHDRAW, WITHDRAW_COLLATERAL)

# Backstop action types
DEPOSIT = "deposit"
QUEUE_WITHDRAWAL = "queue_withdrawal"
DEQUEUE_WITHDRAWAL = "dequeue_withdrawal"
DONATE = "donate"
DRAW = "draw"

Q4W_ACTIONS: tuple[str, ...] = (QUEUE_WITHDRAWAL, DEQUEUE_WITHDRAWAL, WITHDRAW)

# Well-known tokens
BLND_TOKEN_ADDRESS = "CD25MNVTZDL4Y3XBCPCJXGXATV5WUHHOWMYFF4YBEGU5FCPGMYTVG5JY"
LP_TOKEN_ADDRESS = "CDMHROXQ75GEMEJ4LJCT4TUFKY7PH5Z7V5RCVS4KKGU2CQLQRN35DKFT"

# Numeric thresholds
IDENTITY_RATE = 1.0
DEFAULT_SHARE_RATE = 1.0
Q4W_EPSILON = 0.000001
POSITION_CHANGE_THRESHOLD = 0.01
FLOAT_TOLERANCE = 1e-9

DEFAULT_TIMEZONE = "UTC"
