# compgraph/__init__.py

from .types import Auto, InputType, NodeKind, ShapeKind
from .errors import (
    GraphError,
    ConfigurationError,
    IncompatibleShapeError,
    CyclicGraphError,
    ParameterCountMismatchError,
    UnknownNodeError,
    UnknownParameterError,
    PassStateError,
)
from .layers import (
    Layer,
    DenseLayer,
    OutputLayer,
    RnnOutputLayer,
    ActivationLayer,
    SimpleRnn,
    ConvolutionLayer,
)
from .vertices import Vertex, MergeVertex, SubsetVertex, ElementWiseVertex, LastTimeStepVertex
from .losses import LossFunction
from .config import GraphConfig, GraphBuilder, NodeDecl, EdgeDecl
from .graph import ComputationGraph, Node, Edge
from .executor import PassState
from .transfer import ParameterSharing, extract_feature_subgraph, append_tail, freeze_up_to
from .averaging import AggregationTuple, AveragingConfig, ParallelTrainer, average_parameters
from .data_helper import MultiDataSet, ArrayDataset, synthetic_classification
from .training import TrainLoopConfig, Trainer, train_graph
from .diagnostics import GradientSummary, GradientWatcher, gradient_summary, plot_gradient_heatmap
from .record import record, Trace
from .serialization import save_model, load_model
from . import activations
from . import adapters
from . import masks
from . import scheduler

__all__ = [
    "Auto",
    "InputType",
    "NodeKind",
    "ShapeKind",
    "GraphError",
    "ConfigurationError",
    "IncompatibleShapeError",
    "CyclicGraphError",
    "ParameterCountMismatchError",
    "UnknownNodeError",
    "UnknownParameterError",
    "PassStateError",
    "Layer",
    "DenseLayer",
    "OutputLayer",
    "RnnOutputLayer",
    "ActivationLayer",
    "SimpleRnn",
    "ConvolutionLayer",
    "Vertex",
    "MergeVertex",
    "SubsetVertex",
    "ElementWiseVertex",
    "LastTimeStepVertex",
    "LossFunction",
    "GraphConfig",
    "GraphBuilder",
    "NodeDecl",
    "EdgeDecl",
    "ComputationGraph",
    "Node",
    "Edge",
    "PassState",
    "ParameterSharing",
    "extract_feature_subgraph",
    "append_tail",
    "freeze_up_to",
    "AggregationTuple",
    "AveragingConfig",
    "ParallelTrainer",
    "average_parameters",
    "MultiDataSet",
    "ArrayDataset",
    "synthetic_classification",
    "TrainLoopConfig",
    "Trainer",
    "train_graph",
    "GradientSummary",
    "GradientWatcher",
    "gradient_summary",
    "plot_gradient_heatmap",
    "record",
    "Trace",
    "save_model",
    "load_model",
    "activations",
    "adapters",
    "masks",
    "scheduler",
]
