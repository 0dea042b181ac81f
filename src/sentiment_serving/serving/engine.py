"""
Sentiment Engine

Wraps one deserialized scikit-learn text classifier and turns a single input
record into a single prediction record.

A model archive is a zip file holding one ``*.joblib`` member (the fitted
estimator, typically a TF-IDF + linear model pipeline), or a bare joblib
file. Archives are pickles: only load them from sources you trust.
"""

import io
import logging
import threading
import zipfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, Union

import joblib
import numpy as np

logger = logging.getLogger(__name__)

MODEL_MEMBER_NAME = "model.joblib"
MODEL_MEMBER_SUFFIXES = (".joblib", ".pkl")


class ModelLoadError(ValueError):
    """The model blob could not be turned into an engine."""


class PredictionError(ValueError):
    """The engine could not score the given input."""


@dataclass(frozen=True)
class SentimentInput:
    """Input record for one prediction."""
    text: str


@dataclass(frozen=True)
class SentimentPrediction:
    """
    Output record for one prediction.

    Attributes:
        prediction: True for positive sentiment
        probability: Calibrated probability of the positive class (0-1)
        score: Raw decision score; positive means positive sentiment
    """
    prediction: bool
    probability: float
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_estimator(blob: bytes) -> Any:
    """
    Deserialize a fitted estimator from archive bytes.

    Args:
        blob: Zip archive containing a joblib member, or raw joblib bytes

    Returns:
        The fitted estimator

    Raises:
        ModelLoadError: If the bytes are not a usable model
    """
    if not blob:
        raise ModelLoadError("Model blob is empty")

    buffer = io.BytesIO(blob)
    try:
        if zipfile.is_zipfile(buffer):
            with zipfile.ZipFile(buffer) as archive:
                member = _find_model_member(archive)
                with archive.open(member) as fh:
                    return joblib.load(io.BytesIO(fh.read()))
        buffer.seek(0)
        return joblib.load(buffer)
    except ModelLoadError:
        raise
    except Exception as e:
        raise ModelLoadError(f"Could not deserialize model: {e}") from e


def _find_model_member(archive: zipfile.ZipFile) -> str:
    names = archive.namelist()
    if MODEL_MEMBER_NAME in names:
        return MODEL_MEMBER_NAME
    candidates = [n for n in names if n.endswith(MODEL_MEMBER_SUFFIXES)]
    if not candidates:
        raise ModelLoadError(
            f"Archive has no model member (expected one of {MODEL_MEMBER_SUFFIXES}): {names}"
        )
    return sorted(candidates)[0]


def write_model_archive(estimator: Any, target: Union[str, Path, BinaryIO]) -> None:
    """
    Serialize a fitted estimator into a model archive.

    Args:
        estimator: Fitted binary classifier
        target: File path or writable binary file object
    """
    payload = io.BytesIO()
    joblib.dump(estimator, payload)

    with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(MODEL_MEMBER_NAME, payload.getvalue())


class SentimentEngine:
    """
    One loaded sentiment model.

    Not safe for concurrent use; the pool hands each instance to one caller
    at a time.

    Example:
        >>> engine = SentimentEngine.from_bytes(archive_bytes)
        >>> engine.predict(SentimentInput(text="This was a great movie"))
        SentimentPrediction(prediction=True, probability=0.91, score=2.3)
    """

    def __init__(self, estimator: Any):
        """
        Initialize engine.

        Args:
            estimator: Fitted binary classifier exposing ``predict`` and
                ``classes_``, plus ``predict_proba`` and/or ``decision_function``

        Raises:
            ModelLoadError: If the estimator is not a binary classifier
        """
        classes = getattr(estimator, "classes_", None)
        if classes is None or not hasattr(estimator, "predict"):
            raise ModelLoadError("Estimator is not a fitted classifier")
        if len(classes) != 2:
            raise ModelLoadError(
                f"Expected a binary classifier, got {len(classes)} classes"
            )
        if not (hasattr(estimator, "predict_proba") or hasattr(estimator, "decision_function")):
            raise ModelLoadError(
                "Estimator exposes neither predict_proba nor decision_function"
            )

        self.estimator = estimator
        self.positive_label = classes[1]
        self.closed = False

    @classmethod
    def from_bytes(cls, blob: bytes) -> "SentimentEngine":
        """Build an engine from model archive bytes."""
        return cls(load_estimator(blob))

    def predict(self, data: SentimentInput) -> SentimentPrediction:
        """
        Score one input.

        Raises:
            PredictionError: If the input is malformed or the model fails
        """
        if self.closed:
            raise PredictionError("Engine is closed")
        text = getattr(data, "text", None)
        if not isinstance(text, str):
            raise PredictionError(
                f"SentimentText must be a string, got {type(text).__name__}"
            )

        try:
            batch = [text]
            label = self.estimator.predict(batch)[0]
            score = self._score(batch)
            probability = self._probability(batch, score)
        except Exception as e:
            logger.error(f"Prediction failed: {e}")
            raise PredictionError(f"Failed to score input: {e}") from e

        return SentimentPrediction(
            prediction=bool(label == self.positive_label),
            probability=probability,
            score=score,
        )

    def _score(self, batch: list) -> float:
        if hasattr(self.estimator, "decision_function"):
            return float(np.ravel(self.estimator.decision_function(batch))[0])
        # Log-odds of the positive class when the model only gives probabilities.
        p = float(self.estimator.predict_proba(batch)[0][1])
        p = min(max(p, 1e-7), 1 - 1e-7)
        return float(np.log(p / (1 - p)))

    def _probability(self, batch: list, score: float) -> float:
        if hasattr(self.estimator, "predict_proba"):
            return float(self.estimator.predict_proba(batch)[0][1])
        return float(1.0 / (1.0 + np.exp(-score)))

    def close(self) -> None:
        self.closed = True
        self.estimator = None

    def __repr__(self) -> str:
        return f"SentimentEngine(positive_label={self.positive_label!r}, closed={self.closed})"


class EngineFactory:
    """
    Builds engines from the current model blob.

    The pool calls this from worker threads. ``update()`` swaps the blob for
    engines built afterwards; callers then invalidate the pool so older
    engines are retired.
    """

    def __init__(self, blob: bytes, source: str = "<memory>"):
        self._blob = blob
        self._lock = threading.Lock()
        self.source = source
        self.version = 1

    @property
    def blob(self) -> bytes:
        return self._blob

    def update(self, blob: bytes) -> None:
        with self._lock:
            self._blob = blob
            self.version += 1
        logger.info(f"Engine factory updated to model version {self.version}")

    def __call__(self) -> SentimentEngine:
        with self._lock:
            blob = self._blob
        engine = SentimentEngine.from_bytes(blob)
        logger.debug(f"Built engine from {self.source} (version {self.version})")
        return engine
