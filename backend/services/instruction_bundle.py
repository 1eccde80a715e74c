"""Merge two swap legs into one atomic instruction sequence.

Order of the merged bundle:

    compute budget directives (merged once)
    leg A: setup, token ledger, swap
    leg B: setup, token ledger, swap
    cleanup (leg A, then leg B)

An instruction repeated by leg B (for example an idempotent token account
creation both legs need) is kept only at its first position. Identity is
the program, the payload and the ordered account list; two account
creations that share program and payload but target different accounts
are distinct.

Compute budget directives cannot be repeated inside one transaction, so
they are folded per directive kind: unit limits are summed (capped at the
per-transaction maximum) and unit prices take the highest bid.
"""

from __future__ import annotations

import base64
import struct
from typing import Iterable, Optional

from models.quote import InstructionSpec, MergedBundle, SwapInstructions

COMPUTE_BUDGET_PROGRAM_ID = "ComputeBudget111111111111111111111111111111"
MAX_COMPUTE_UNITS = 1_400_000

_SET_COMPUTE_UNIT_LIMIT = 2
_SET_COMPUTE_UNIT_PRICE = 3


def instruction_key(spec: InstructionSpec) -> tuple:
    return (spec.program_id, spec.data, spec.account_keys(), spec.value)


def _decode(spec: InstructionSpec) -> bytes:
    return base64.b64decode(spec.data) if spec.data else b""


def _encode(program_id: str, payload: bytes) -> InstructionSpec:
    return InstructionSpec(program_id=program_id, accounts=(), data=base64.b64encode(payload).decode("ascii"))


def merge_compute_budget(groups: Iterable[list[InstructionSpec]]) -> list[InstructionSpec]:
    """Fold compute budget directives from several legs into one set."""
    unit_limit: Optional[int] = None
    unit_price: Optional[int] = None
    passthrough: list[InstructionSpec] = []
    seen: set[tuple] = set()

    for group in groups:
        for spec in group:
            payload = _decode(spec)
            kind = payload[0] if payload else None
            if spec.program_id == COMPUTE_BUDGET_PROGRAM_ID and kind == _SET_COMPUTE_UNIT_LIMIT and len(payload) >= 5:
                units = struct.unpack_from("<I", payload, 1)[0]
                unit_limit = units if unit_limit is None else unit_limit + units
            elif spec.program_id == COMPUTE_BUDGET_PROGRAM_ID and kind == _SET_COMPUTE_UNIT_PRICE and len(payload) >= 9:
                price = struct.unpack_from("<Q", payload, 1)[0]
                unit_price = price if unit_price is None else max(unit_price, price)
            else:
                key = instruction_key(spec)
                if key not in seen:
                    seen.add(key)
                    passthrough.append(spec)

    merged: list[InstructionSpec] = []
    if unit_limit is not None:
        merged.append(
            _encode(
                COMPUTE_BUDGET_PROGRAM_ID,
                struct.pack("<BI", _SET_COMPUTE_UNIT_LIMIT, min(unit_limit, MAX_COMPUTE_UNITS)),
            )
        )
    if unit_price is not None:
        merged.append(_encode(COMPUTE_BUDGET_PROGRAM_ID, struct.pack("<BQ", _SET_COMPUTE_UNIT_PRICE, unit_price)))
    return merged + passthrough


def merge_leg_instructions(leg_a: SwapInstructions, leg_b: SwapInstructions) -> MergedBundle:
    """Combine both legs into one ordered, de-duplicated bundle."""
    ordered: list[InstructionSpec] = []
    seen: set[tuple] = set()
    duplicates = 0

    def _append(spec: Optional[InstructionSpec]) -> None:
        nonlocal duplicates
        if spec is None:
            return
        key = instruction_key(spec)
        if key in seen:
            duplicates += 1
            return
        seen.add(key)
        ordered.append(spec)

    budget = merge_compute_budget([leg_a.compute_budget, leg_b.compute_budget])
    duplicates += len(leg_a.compute_budget) + len(leg_b.compute_budget) - len(budget)
    for spec in budget:
        _append(spec)

    for leg in (leg_a, leg_b):
        for spec in leg.setup:
            _append(spec)
        _append(leg.token_ledger)
        _append(leg.swap)

    _append(leg_a.cleanup)
    _append(leg_b.cleanup)

    lookup_tables = list(dict.fromkeys([*leg_a.lookup_table_addresses, *leg_b.lookup_table_addresses]))
    return MergedBundle(
        instructions=ordered,
        lookup_table_addresses=lookup_tables,
        duplicates_removed=max(0, duplicates),
    )
