import pytest
import torch

from compgraph import NodeKind, masks


def test_from_lengths_and_all_valid():
    mask = masks.from_lengths([3, 1], timesteps=4)
    assert torch.equal(mask, torch.tensor([[1.0, 1.0, 1.0, 0.0], [1.0, 0.0, 0.0, 0.0]]))
    assert masks.from_lengths([2, 5]).shape == (2, 5)
    assert torch.equal(masks.all_valid(3), torch.ones(3))
    assert masks.all_valid(2, 4).shape == (2, 4)
    with pytest.raises(ValueError):
        masks.from_lengths([6], timesteps=4)


def test_combine_policy_per_kind():
    a = torch.tensor([[1.0, 1.0, 0.0]])
    b = torch.tensor([[1.0, 0.0, 0.0]])
    for kind in (NodeKind.MERGE, NodeKind.ELEMENTWISE, NodeKind.LAYER):
        assert torch.equal(masks.combine([a, b], kind), torch.tensor([[1.0, 0.0, 0.0]]))
    assert masks.combine([a, None], NodeKind.MERGE) is a
    assert masks.combine([None, None], NodeKind.MERGE) is None
    assert masks.combine([a], NodeKind.SUBSET) is a
    assert masks.combine([], NodeKind.LAYER) is None
    with pytest.raises(ValueError):
        masks.combine([a, b], NodeKind.SUBSET)
    with pytest.raises(ValueError):
        masks.combine([a, torch.ones(1, 4)], NodeKind.MERGE)


def test_last_valid_index():
    mask = torch.tensor([[1.0, 1.0, 0.0], [1.0, 1.0, 1.0], [0.0, 0.0, 0.0]])
    assert masks.last_valid_index(mask, 3, 3).tolist() == [1, 2, 0]
    assert masks.last_valid_index(None, 5, 2).tolist() == [4, 4]


def test_apply_helpers_zero_masked_positions():
    seq = torch.ones(2, 3, 2)
    mask = torch.tensor([[1.0, 0.0, 1.0], [0.0, 0.0, 1.0]])
    out = masks.apply_to_sequence(seq, mask)
    assert out[0, 1].sum() == 0 and out[1, 2].sum() == 2
    rows = masks.apply_to_rows(torch.ones(3, 2, 2), torch.tensor([1.0, 0.0, 1.0]))
    assert rows[1].sum() == 0 and rows[2].sum() == 4
    assert masks.apply_to_rows(seq, None) is seq
