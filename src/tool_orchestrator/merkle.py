# merkle.py
# SHA-256 Merkle commitment over a validated plan.
#
# The orchestrator commits the plan once planning and safety validation pass,
# then checks each step against its leaf immediately before running it. A step
# that changed in between raises IntegrityError and the turn halts.

import hashlib
import json
from typing import Any

from tool_orchestrator.errors import IntegrityError
from tool_orchestrator.models import Plan, PlanStep


def _sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def canonical_json(value: Any) -> str:
    """Deterministic serialization. Keys sorted, no whitespace variance."""
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)


def leaf_hash(step: dict[str, Any]) -> str:
    return _sha256(canonical_json(step))


def _pair_up(layer: list[str]) -> list[str]:
    if len(layer) % 2:
        layer = [*layer, layer[-1]]
    return [_sha256(layer[i] + layer[i + 1]) for i in range(0, len(layer), 2)]


# ---------------------------------------------------------------------------
# MerkleTree
# ---------------------------------------------------------------------------


class MerkleTree:
    """
    Plan commitment. One leaf per step, in execution order.

    Every layer is kept so inclusion proofs can be produced for a single step
    without re-hashing the plan. A lone trailing node is paired with itself.
    """

    def __init__(self, steps: list[dict[str, Any]]) -> None:
        if not steps:
            raise ValueError("Cannot commit an empty step list")

        self._layers: list[list[str]] = [[leaf_hash(s) for s in steps]]
        while len(self._layers[-1]) > 1:
            self._layers.append(_pair_up(self._layers[-1]))

    @classmethod
    def commit(cls, plan: Plan) -> "MerkleTree":
        return cls(plan.leaves())

    @property
    def root(self) -> str:
        return self._layers[-1][0]

    @property
    def leaves(self) -> list[str]:
        return list(self._layers[0])

    # ------------------------------------------------------------------
    # Step checks
    # ------------------------------------------------------------------

    def verify_leaf(self, index: int, step: dict[str, Any]) -> bool:
        leaves = self._layers[0]
        return 0 <= index < len(leaves) and leaves[index] == leaf_hash(step)

    def verify_step(self, step: PlanStep) -> None:
        if not self.verify_leaf(step.order, step.leaf()):
            raise IntegrityError(
                step.tool,
                f"Plan step {step.order} ({step.tool}) does not match the committed plan",
                {"root": self.root, "order": step.order},
            )

    # ------------------------------------------------------------------
    # Inclusion proofs
    # ------------------------------------------------------------------

    def proof(self, index: int) -> list[tuple[str, str]]:
        """Sibling hashes from leaf to root, each tagged 'left' or 'right'."""
        if not 0 <= index < len(self._layers[0]):
            raise IndexError(f"Leaf index {index} out of range")
        path = []
        for layer in self._layers[:-1]:
            sibling = index ^ 1
            sibling_hash = layer[sibling] if sibling < len(layer) else layer[index]
            path.append((sibling_hash, "left" if sibling < index else "right"))
            index //= 2
        return path

    @staticmethod
    def verify_proof(step: dict[str, Any], proof: list[tuple[str, str]], root: str) -> bool:
        node = leaf_hash(step)
        for sibling, side in proof:
            node = _sha256(sibling + node) if side == "left" else _sha256(node + sibling)
        return node == root
