import base64
import struct
import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import SOL_MINT, USDC_MINT, compute_budget_ix, create_ata_ix, new_address, swap_ix
from models.quote import InstructionSpec, SwapInstructions
from services.instruction_bundle import (
    COMPUTE_BUDGET_PROGRAM_ID,
    MAX_COMPUTE_UNITS,
    merge_compute_budget,
    merge_leg_instructions,
)


def _decode_budget(spec: InstructionSpec) -> tuple[int, int]:
    payload = base64.b64decode(spec.data)
    if payload[0] == 2:
        return 2, struct.unpack_from("<I", payload, 1)[0]
    return payload[0], struct.unpack_from("<Q", payload, 1)[0]


def test_shared_setup_instruction_appears_once():
    owner = new_address()
    shared = create_ata_ix(owner, USDC_MINT)
    leg_a = SwapInstructions(swap=swap_ix(b"leg-a", owner), setup=[shared], lookup_table_addresses=["T1"])
    leg_b = SwapInstructions(swap=swap_ix(b"leg-b", owner), setup=[shared], lookup_table_addresses=["T1", "T2"])

    bundle = merge_leg_instructions(leg_a, leg_b)

    assert bundle.instructions == [shared, leg_a.swap, leg_b.swap]
    assert bundle.duplicates_removed == 1
    assert bundle.lookup_table_addresses == ["T1", "T2"]


def test_same_program_and_payload_on_different_accounts_are_distinct():
    owner = new_address()
    usdc_account = create_ata_ix(owner, USDC_MINT)
    sol_account = create_ata_ix(owner, SOL_MINT)
    leg_a = SwapInstructions(swap=swap_ix(b"leg-a", owner), setup=[usdc_account])
    leg_b = SwapInstructions(swap=swap_ix(b"leg-b", owner), setup=[sol_account])

    bundle = merge_leg_instructions(leg_a, leg_b)

    assert bundle.instructions == [usdc_account, leg_a.swap, sol_account, leg_b.swap]
    assert bundle.duplicates_removed == 0


def test_bundle_order_is_budget_then_legs_then_cleanup():
    owner = new_address()
    cleanup_a = InstructionSpec(program_id=SOL_MINT, accounts=(), data=base64.b64encode(b"close-a").decode())
    cleanup_b = InstructionSpec(program_id=SOL_MINT, accounts=(), data=base64.b64encode(b"close-b").decode())
    ledger = InstructionSpec(program_id=SOL_MINT, accounts=(), data=base64.b64encode(b"ledger").decode())
    leg_a = SwapInstructions(
        swap=swap_ix(b"leg-a", owner),
        compute_budget=[compute_budget_ix(2, 200_000)],
        token_ledger=ledger,
        cleanup=cleanup_a,
    )
    leg_b = SwapInstructions(
        swap=swap_ix(b"leg-b", owner),
        compute_budget=[compute_budget_ix(2, 300_000)],
        cleanup=cleanup_b,
    )

    bundle = merge_leg_instructions(leg_a, leg_b)

    assert bundle.instructions[0].program_id == COMPUTE_BUDGET_PROGRAM_ID
    assert bundle.instructions[1:] == [ledger, leg_a.swap, leg_b.swap, cleanup_a, cleanup_b]


def test_compute_budget_limits_sum_and_price_takes_max():
    merged = merge_compute_budget(
        [
            [compute_budget_ix(2, 200_000), compute_budget_ix(3, 1_000)],
            [compute_budget_ix(2, 250_000), compute_budget_ix(3, 5_000)],
        ]
    )

    assert [_decode_budget(spec) for spec in merged] == [(2, 450_000), (3, 5_000)]


def test_compute_unit_limit_is_capped():
    merged = merge_compute_budget([[compute_budget_ix(2, 1_000_000)], [compute_budget_ix(2, 1_000_000)]])

    assert _decode_budget(merged[0]) == (2, MAX_COMPUTE_UNITS)


def test_budget_merge_counts_folded_directives_as_duplicates():
    owner = new_address()
    leg_a = SwapInstructions(
        swap=swap_ix(b"leg-a", owner),
        compute_budget=[compute_budget_ix(2, 200_000), compute_budget_ix(3, 1_000)],
    )
    leg_b = SwapInstructions(
        swap=swap_ix(b"leg-b", owner),
        compute_budget=[compute_budget_ix(2, 200_000), compute_budget_ix(3, 1_000)],
    )

    bundle = merge_leg_instructions(leg_a, leg_b)

    assert len(bundle.instructions) == 4
    assert bundle.duplicates_removed == 2
