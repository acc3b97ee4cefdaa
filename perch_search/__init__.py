__all__ = [
    "EnvConfig", "CameraIntrinsics", "load_config",
    "PerchError", "ConfigurationError", "StateLookupError", "RenderFailure",
    "WireCapacityError", "DistributedProtocolMismatch", "CollectiveTimeout", "WorkerFailure",
    "ContinuousPose", "DiscretePose", "Placement", "PlacementState", "StateProperties",
    "CostResult", "INVALID_COST", "NO_DEPTH", "states_equal", "states_equal_ordered",
    "ObjectModel", "cylinder_model", "box_model", "model_from_spec", "load_models",
    "Camera", "DepthRenderer", "Observation",
    "PlanarICP", "StateRegistry", "PoseGrid", "FeasibilityChecker", "SuccessorGenerator",
    "CostEvaluator", "SerialCommunicator", "PipeCommunicator", "ProcessGroup",
    "DistributedCostScheduler", "padded_count", "HeuristicEngine",
    "ObjectRecognitionEnv", "MultiHeuristicAStar", "ObjectRecognizer",
]

# Configuration & errors
from .config import EnvConfig, CameraIntrinsics, load_config
from .errors import (
    PerchError,
    ConfigurationError,
    StateLookupError,
    RenderFailure,
    WireCapacityError,
    DistributedProtocolMismatch,
    CollectiveTimeout,
    WorkerFailure,
)

# States
from .state import (
    ContinuousPose,
    DiscretePose,
    Placement,
    PlacementState,
    StateProperties,
    CostResult,
    INVALID_COST,
    NO_DEPTH,
    states_equal,
    states_equal_ordered,
)

# Geometry
from .models import ObjectModel, cylinder_model, box_model, model_from_spec, load_models
from .renderer import Camera, DepthRenderer
from .observation import Observation
from .alignment import PlanarICP

# Search engine
from .registry import StateRegistry
from .successors import PoseGrid, FeasibilityChecker, SuccessorGenerator
from .cost import CostEvaluator
from .comm import SerialCommunicator, PipeCommunicator, ProcessGroup
from .scheduler import DistributedCostScheduler, padded_count
from .heuristics import HeuristicEngine
from .environment import ObjectRecognitionEnv
from .search import MultiHeuristicAStar
from .recognizer import ObjectRecognizer
