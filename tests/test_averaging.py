import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import compgraph  # noqa: E402
from compgraph.averaging import AggregationTuple, AveragingConfig, ParallelTrainer, average_parameters  # noqa: E402
from compgraph.training import TrainLoopConfig, build_optimizer, fit_batch  # noqa: E402


def _graph() -> compgraph.ComputationGraph:
    config = (
        compgraph.GraphConfig.builder()
        .add_inputs(**{"in": compgraph.InputType.feed_forward(3)})
        .add_layer("out", compgraph.OutputLayer(2, activation="softmax", loss="mcxent"), "in")
        .set_outputs("out")
        .dtype(torch.float64)
        .seed(21)
        .build()
    )
    return compgraph.ComputationGraph(config).init()


def test_combine_treats_none_and_empty_as_identity():
    item = AggregationTuple(torch.tensor([1.0, 3.0]), score=2.0, count=1)
    assert AggregationTuple.combine(None, item) is item
    assert AggregationTuple.combine(item, None) is item
    assert AggregationTuple.combine(AggregationTuple(None), item) is item
    assert AggregationTuple.combine(None, None) is None

    merged = AggregationTuple.combine(item, AggregationTuple(torch.tensor([3.0, 5.0]), score=4.0, count=1))
    torch.testing.assert_close(merged.average_params(), torch.tensor([2.0, 4.0]))
    assert merged.average_score() == 3.0
    with pytest.raises(ValueError):
        AggregationTuple(None).average_params()


def test_average_parameters_of_graphs_and_tensors():
    first = _graph()
    second = first.clone()
    second.set_params(torch.zeros(second.num_params(), dtype=torch.float64))
    torch.testing.assert_close(average_parameters([first, second]), first.params() / 2)
    torch.testing.assert_close(
        average_parameters([torch.ones(4), torch.full((4,), 3.0)]),
        torch.full((4,), 2.0),
    )
    with pytest.raises(ValueError):
        average_parameters([])


def test_fit_round_matches_sequential_workers():
    graph = _graph()
    data = compgraph.synthetic_classification(16, 3, 2, seed=4)
    batches = [
        compgraph.MultiDataSet(
            {"in": part.features["in"].double()},
            {"out": part.labels["out"].double()},
        )
        for part in data.split(4)
    ]
    train_config = TrainLoopConfig(epochs=1, lr=0.2, log_every=1)

    expected_workers = [graph.clone(), graph.clone()]
    for index, worker in enumerate(expected_workers):
        optimizer = build_optimizer(worker, train_config)
        for batch in batches[index::2]:
            fit_batch(worker, batch, optimizer)
    expected = average_parameters(expected_workers)

    trainer = ParallelTrainer(graph, AveragingConfig(workers=2), train_config)
    score = trainer.fit_round(batches)

    assert score > 0
    torch.testing.assert_close(graph.params(), expected)
    for worker in trainer.workers:
        torch.testing.assert_close(worker.params(), expected)
    assert trainer.rounds == 1


def test_fit_over_dataset_reports_every_round(capsys):
    graph = _graph()
    data = compgraph.synthetic_classification(24, 3, 2, seed=5)
    data = compgraph.MultiDataSet({"in": data.features["in"].double()}, {"out": data.labels["out"].double()})
    trainer = ParallelTrainer(
        graph,
        AveragingConfig(workers=2, averaging_frequency=2),
        TrainLoopConfig(epochs=1, lr=0.1, log_every=1),
    )
    history = trainer.fit(compgraph.ArrayDataset(data, batch_size=4, seed=0), epochs=2)
    # 6 minibatches per epoch, 4 per round: two rounds per epoch.
    assert len(history) == 4
    assert "Epoch 2 final loss:" in capsys.readouterr().out

    with pytest.raises(ValueError):
        AveragingConfig(workers=0)
