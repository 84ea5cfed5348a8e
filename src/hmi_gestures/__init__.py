"""hmi-gestures - pointer and touch gesture recognition engine."""

__version__ = "0.1.0"

from hmi_gestures.errors import (
    ConfigurationError,
    GestureEngineError,
    IngestionError,
    PatternEvaluationError,
)
from hmi_gestures.samples import POINTER, Sample, SampleBuffer
from hmi_gestures.patterns import DetectionInput, DetectionResult, GesturePattern, TouchTrack
from hmi_gestures.factory import DetectorFactory
from hmi_gestures.matcher import PatternMatcher
from hmi_gestures.sequences import GestureSequence, SequenceEngine, SequenceEvent, SequenceStep
from hmi_gestures.dispatcher import GestureDispatcher, GestureEvent, GestureRegistry, RegistrationBuilder
from hmi_gestures.events import BusEvent, EventBus
from hmi_gestures.monitor import Alert, PerformanceMonitor
from hmi_gestures.profiler import TickProfiler
from hmi_gestures.metrics import MetricsCollector
from hmi_gestures.contexts import ContextManager, GestureContext
from hmi_gestures.config import EngineConfig, GestureSpec
from hmi_gestures.recorder import SamplePlayer, SampleRecorder
from hmi_gestures.engine import EngineDiagnostics, GestureEngine
