from __future__ import annotations

import os
import warnings
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Tuple

import joblib
import numpy as np
from sklearn.exceptions import ConvergenceWarning
from sklearn.neural_network import MLPClassifier

from schemas.records import utcnow


class ModelUnavailableError(RuntimeError):
    pass


class TrainableModel(ABC):
    """A classifier that can be refit from a small window of labelled vectors."""

    name: str
    version: int = 0
    accuracy: float = 0.0
    trained_at: Optional[datetime] = None
    samples: int = 0

    @property
    @abstractmethod
    def is_trained(self) -> bool:
        ...

    @abstractmethod
    def fit(self, features: np.ndarray, labels: Sequence[str]) -> bool:
        """Refit from scratch. Returns False when the data cannot train a model."""

    @abstractmethod
    def predict(self, features: np.ndarray) -> Tuple[str, float]:
        """Best label and its probability for one feature vector."""

    def metadata(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "accuracy": round(self.accuracy, 4),
            "samples": self.samples,
            "trained_at": self.trained_at,
            "trained": self.is_trained,
        }

    def save(self, directory: str) -> Optional[str]:
        return None

    def load(self, directory: str) -> bool:
        return False


class MLPModel(TrainableModel):
    def __init__(
        self,
        name: str,
        hidden_layers: Tuple[int, ...],
        max_iter: int = 500,
        random_state: int = 0,
    ) -> None:
        self.name = name
        self.hidden_layers = tuple(hidden_layers)
        self.max_iter = max_iter
        self.random_state = random_state
        self._clf: Optional[MLPClassifier] = None

    @property
    def is_trained(self) -> bool:
        return self._clf is not None

    @property
    def classes(self) -> Tuple[str, ...]:
        return tuple(str(c) for c in self._clf.classes_) if self._clf is not None else ()

    def fit(self, features: np.ndarray, labels: Sequence[str]) -> bool:
        labels = [str(label) for label in labels]
        if len(labels) == 0 or len(set(labels)) < 2:
            return False
        clf = MLPClassifier(
            hidden_layer_sizes=self.hidden_layers,
            activation="relu",
            solver="lbfgs",
            alpha=1e-3,
            max_iter=self.max_iter,
            random_state=self.random_state,
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=ConvergenceWarning)
            clf.fit(np.asarray(features, dtype=np.float32), labels)
        self._clf = clf
        self.version += 1
        self.samples = len(labels)
        self.accuracy = float(clf.score(np.asarray(features, dtype=np.float32), labels))
        self.trained_at = utcnow()
        return True

    def predict(self, features: np.ndarray) -> Tuple[str, float]:
        if self._clf is None:
            raise ModelUnavailableError(f"{self.name} model is not trained")
        proba = self._clf.predict_proba(np.asarray(features, dtype=np.float32).reshape(1, -1))[0]
        idx = int(np.argmax(proba))
        return str(self._clf.classes_[idx]), float(proba[idx])

    def _path(self, directory: str) -> str:
        return os.path.join(directory, f"{self.name}_model.joblib")

    def save(self, directory: str) -> Optional[str]:
        if self._clf is None:
            return None
        os.makedirs(directory, exist_ok=True)
        path = self._path(directory)
        joblib.dump(
            {
                "classifier": self._clf,
                "version": self.version,
                "accuracy": self.accuracy,
                "samples": self.samples,
                "trained_at": self.trained_at,
            },
            path,
        )
        return path

    def load(self, directory: str) -> bool:
        path = self._path(directory)
        if not os.path.exists(path):
            return False
        payload = joblib.load(path)
        self._clf = payload["classifier"]
        self.version = int(payload.get("version", 1))
        self.accuracy = float(payload.get("accuracy", 0.0))
        self.samples = int(payload.get("samples", 0))
        self.trained_at = payload.get("trained_at")
        return True


class UnavailableModel(TrainableModel):
    """Placeholder when learning is disabled; every prediction falls back to rules."""

    def __init__(self, name: str) -> None:
        self.name = name

    @property
    def is_trained(self) -> bool:
        return False

    def fit(self, features: np.ndarray, labels: Sequence[str]) -> bool:
        return False

    def predict(self, features: np.ndarray) -> Tuple[str, float]:
        raise ModelUnavailableError(f"{self.name} model is disabled")


MERCHANT_HIDDEN_LAYERS = (20, 10)
CATEGORY_HIDDEN_LAYERS = (15, 8)
AMOUNT_HIDDEN_LAYERS = (15, 10)


def build_model(name: str, hidden_layers: Tuple[int, ...], enabled: bool = True) -> TrainableModel:
    if not enabled:
        return UnavailableModel(name)
    return MLPModel(name, hidden_layers)
