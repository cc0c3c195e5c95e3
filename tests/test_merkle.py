import pytest

from tool_orchestrator.errors import IntegrityError
from tool_orchestrator.merkle import MerkleTree, canonical_json
from tool_orchestrator.models import Plan, PlanStep, Risk


def _plan(*steps):
    return Plan(
        steps=list(steps),
        total_time_budget_ms=15_000,
        total_memory_budget_mb=30,
        risk_level=Risk.LOW,
    )


READ = PlanStep(tool="read_file", args={"file_path": "config.json"}, provides={"file_content"})
SEARCH = PlanStep(tool="code_search", args={"pattern": "database"}, order=1)

# ---------------------------------------------------------------------------
# Merkle Tree Verification Tests
# ---------------------------------------------------------------------------

def test_merkle_tree_construction_and_verification():
    tree = MerkleTree.commit(_plan(READ, SEARCH))

    assert tree.verify_leaf(0, READ.leaf()) is True
    assert tree.verify_leaf(1, SEARCH.leaf()) is True

    mutated = READ.leaf()
    mutated["tool"] = "execute_command"
    assert tree.verify_leaf(0, mutated) is False
    assert tree.verify_leaf(5, READ.leaf()) is False

def test_merkle_tree_empty_steps():
    with pytest.raises(ValueError, match="empty step list"):
        MerkleTree([])

def test_single_leaf_root_is_the_leaf():
    tree = MerkleTree([READ.leaf()])
    assert tree.root == tree.leaves[0]
    assert tree.proof(0) == []

def test_root_is_deterministic_and_order_sensitive():
    assert MerkleTree([{"a": 1, "b": 2}]).root == MerkleTree([{"b": 2, "a": 1}]).root
    assert MerkleTree([READ.leaf(), SEARCH.leaf()]).root != MerkleTree([SEARCH.leaf(), READ.leaf()]).root

def test_canonical_json_is_compact_and_sorted():
    assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

# ---------------------------------------------------------------------------
# Step integrity
# ---------------------------------------------------------------------------

def test_verify_step_accepts_committed_step():
    tree = MerkleTree.commit(_plan(READ, SEARCH))
    assert tree.verify_step(SEARCH) is None

def test_verify_step_rejects_tampered_args():
    tree = MerkleTree.commit(_plan(READ, SEARCH))
    tampered = READ.model_copy(update={"args": {"file_path": "/etc/passwd"}})

    with pytest.raises(IntegrityError, match="does not match the committed plan"):
        tree.verify_step(tampered)

def test_descriptor_and_clause_are_not_committed():
    tree = MerkleTree.commit(_plan(READ))
    assert tree.verify_step(READ.model_copy(update={"clause": "read it again"})) is None

# ---------------------------------------------------------------------------
# Inclusion proofs
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("size", [2, 3, 5])
def test_every_leaf_has_a_valid_proof(size):
    steps = [{"order": i, "tool": f"tool_{i}"} for i in range(size)]
    tree = MerkleTree(steps)

    for index, step in enumerate(steps):
        assert MerkleTree.verify_proof(step, tree.proof(index), tree.root)

def test_proof_fails_for_wrong_step():
    steps = [{"order": 0}, {"order": 1}, {"order": 2}]
    tree = MerkleTree(steps)
    assert not MerkleTree.verify_proof({"order": 9}, tree.proof(1), tree.root)

def test_proof_index_out_of_range():
    with pytest.raises(IndexError):
        MerkleTree([{"order": 0}]).proof(1)
