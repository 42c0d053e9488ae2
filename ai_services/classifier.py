from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

import numpy as np

from services import config
from services.json_logger import get_json_logger
from ai_services.categorization import RuleBasedCategorizer, UNKNOWN_MERCHANT
from ai_services.features import When, bucket_range, encode_sample
from ai_services.models import (
    AMOUNT_HIDDEN_LAYERS,
    CATEGORY_HIDDEN_LAYERS,
    MERCHANT_HIDDEN_LAYERS,
    TrainableModel,
    build_model,
)
from ai_services.training import (
    TrainingBatch,
    TrainingSample,
    amount_sample,
    category_sample,
    merchant_sample,
    normalize_category_label,
)
from schemas.records import (
    KIND_AMOUNT_RANGE,
    KIND_CATEGORY,
    KIND_MERCHANT,
    METHOD_NEURAL,
    Prediction,
)
from storage.store import Store


logger = get_json_logger("statement_parser.classifier")


class TrainingWindow:
    """Most recent labelled samples for one predictor, capped at `capacity`."""

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        self._samples: Deque[TrainingSample] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._samples)

    def append(self, sample: TrainingSample) -> None:
        self._samples.append(sample)

    def reset(self, samples: Iterable[TrainingSample]) -> None:
        self._samples = deque(samples, maxlen=self.capacity)

    def trim_to(self, size: int) -> None:
        while len(self._samples) > size:
            self._samples.popleft()

    def matrix(self) -> Tuple[np.ndarray, List[str]]:
        features = np.stack([s.features for s in self._samples])
        return features, [s.label for s in self._samples]


class Classifier:
    """
    Merchant, category and amount-range prediction.

    Each predictor asks its trainable model first. The model's answer is used
    only when the model is trained, does not fail, and is at least
    `min_model_confidence` sure; otherwise the rule tables answer with
    method "rule_based". Corrections accumulate in per-predictor windows and a
    predictor is refit once its window grows past its minimum size.
    """

    def __init__(
        self,
        merchant_model: Optional[TrainableModel] = None,
        category_model: Optional[TrainableModel] = None,
        amount_model: Optional[TrainableModel] = None,
        rules: Optional[RuleBasedCategorizer] = None,
        store: Optional[Store] = None,
        models_dir: Optional[str] = None,
        ml_enabled: Optional[bool] = None,
        window_size: Optional[int] = None,
        merchant_retrain_min: Optional[int] = None,
        category_retrain_min: Optional[int] = None,
        amount_retrain_min: Optional[int] = None,
        min_samples: Optional[int] = None,
        min_model_confidence: Optional[float] = None,
    ) -> None:
        enabled = config.ML_ENABLED if ml_enabled is None else ml_enabled
        self.merchant_model = merchant_model or build_model("merchant", MERCHANT_HIDDEN_LAYERS, enabled)
        self.category_model = category_model or build_model("category", CATEGORY_HIDDEN_LAYERS, enabled)
        self.amount_model = amount_model or build_model("amount", AMOUNT_HIDDEN_LAYERS, enabled)
        self.rules = rules or RuleBasedCategorizer()
        self.store = store
        self.models_dir = models_dir

        self.window_size = int(window_size or config.TRAINING_WINDOW_SIZE)
        self.merchant_retrain_min = int(merchant_retrain_min or config.MERCHANT_RETRAIN_MIN)
        self.category_retrain_min = int(category_retrain_min or config.CATEGORY_RETRAIN_MIN)
        self.amount_retrain_min = int(amount_retrain_min or config.AMOUNT_RETRAIN_MIN)
        self.min_samples = int(min_samples or config.MIN_TRAINING_SAMPLES)
        self.min_model_confidence = float(
            min_model_confidence if min_model_confidence is not None else config.MIN_MODEL_CONFIDENCE
        )

        self.merchant_window = TrainingWindow(self.window_size)
        self.category_window = TrainingWindow(self.window_size)
        self.amount_window = TrainingWindow(self.window_size)
        self._predictions = {"neural": 0, "rule_based": 0}
        self._retrains = {"merchant": 0, "category": 0, "amount": 0}

    # ---- inference ----
    async def _infer(self, model: TrainableModel, features: np.ndarray) -> Optional[Tuple[str, float]]:
        if not model.is_trained:
            return None
        try:
            label, confidence = await asyncio.to_thread(model.predict, features)
        except Exception as exc:
            logger.debug("model_prediction_failed", extra={"extra": {"model": model.name, "error": str(exc)}})
            return None
        if confidence < self.min_model_confidence:
            return None
        return label, confidence

    def _count(self, prediction: Prediction) -> Prediction:
        key = "neural" if prediction.method == METHOD_NEURAL else "rule_based"
        self._predictions[key] += 1
        return prediction

    async def predict_merchant(self, text: str, amount: Optional[float] = None, when: When = None) -> Prediction:
        result = await self._infer(self.merchant_model, encode_sample(text, amount, when))
        if result is not None:
            return self._count(Prediction(KIND_MERCHANT, result[0], result[1], METHOD_NEURAL))
        return self._count(self.rules.predict_merchant(text))

    async def predict_category(
        self,
        text: str,
        amount: float = 0.0,
        merchant_hint: Optional[Prediction] = None,
        when: When = None,
    ) -> Prediction:
        hint_confidence = merchant_hint.confidence if merchant_hint else 0.0
        features = encode_sample(text, amount, when, hint_confidence)
        result = await self._infer(self.category_model, features)
        if result is not None:
            label = normalize_category_label(result[0])
            return self._count(Prediction(KIND_CATEGORY, label, result[1], METHOD_NEURAL))
        hint_name = merchant_hint.value if merchant_hint and merchant_hint.value != UNKNOWN_MERCHANT else None
        return self._count(self.rules.predict_category(text, amount, hint_name))

    async def predict_amount_range(self, text: str, merchant_hint: Optional[Prediction] = None) -> Prediction:
        hint_confidence = merchant_hint.confidence if merchant_hint else 0.0
        result = await self._infer(self.amount_model, encode_sample(text, None, None, hint_confidence))
        if result is not None:
            return self._count(Prediction(KIND_AMOUNT_RANGE, bucket_range(result[0]), result[1], METHOD_NEURAL))
        hint_name = merchant_hint.value if merchant_hint and merchant_hint.value != UNKNOWN_MERCHANT else None
        return self._count(self.rules.predict_amount_range(text, hint_name))

    # ---- online updates ----
    async def update_merchant(self, text: str, merchant: str, amount: Optional[float] = None, when: When = None) -> None:
        self.merchant_window.append(merchant_sample(text, merchant, amount, when))
        if len(self.merchant_window) > self.merchant_retrain_min:
            await self.retrain_merchant_network()

    async def update_category(
        self,
        text: str,
        category: str,
        amount: Optional[float] = None,
        when: When = None,
        merchant_confidence: float = 0.0,
    ) -> None:
        self.category_window.append(category_sample(text, category, amount, when, merchant_confidence))
        if len(self.category_window) > self.category_retrain_min:
            await self.retrain_category_network()

    async def update_amount(self, text: str, amount: float, merchant_confidence: float = 0.0) -> None:
        self.amount_window.append(amount_sample(text, amount, merchant_confidence))
        if len(self.amount_window) > self.amount_retrain_min:
            await self.retrain_amount_network()

    # ---- retraining ----
    async def _retrain(self, kind: str, model: TrainableModel, window: TrainingWindow) -> bool:
        if len(window) < self.min_samples:
            return False
        try:
            features, labels = window.matrix()
            trained = await asyncio.to_thread(model.fit, features, labels)
            if trained:
                self._retrains[kind] += 1
                await self._record_model(model)
            else:
                logger.info("retrain_skipped", extra={"extra": {"model": kind, "samples": len(labels), "labels": len(set(labels))}})
        except Exception as exc:
            logger.error("retrain_failed", extra={"extra": {"model": kind, "error": str(exc)}})
            trained = False
        window.trim_to(self.window_size // 2)
        return trained

    async def retrain_merchant_network(self) -> bool:
        return await self._retrain("merchant", self.merchant_model, self.merchant_window)

    async def retrain_category_network(self) -> bool:
        return await self._retrain("category", self.category_model, self.category_window)

    async def retrain_amount_network(self) -> bool:
        return await self._retrain("amount", self.amount_model, self.amount_window)

    async def retrain(self, batch: TrainingBatch) -> Dict[str, bool]:
        """Replace every window with `batch` and refit each predictor once."""
        self.merchant_window.reset(batch.merchant)
        self.category_window.reset(batch.category)
        self.amount_window.reset(batch.amount)
        results = {
            "merchant": await self.retrain_merchant_network(),
            "category": await self.retrain_category_network(),
            "amount": await self.retrain_amount_network(),
        }
        logger.info("models_retrained", extra={"extra": {"results": results, "samples": len(batch)}})
        return results

    async def _record_model(self, model: TrainableModel) -> None:
        if self.models_dir:
            await asyncio.to_thread(model.save, self.models_dir)
        if self.store is not None:
            await self.store.put("models", model.metadata())

    def load_models(self) -> Dict[str, bool]:
        if not self.models_dir:
            return {}
        loaded = {m.name: m.load(self.models_dir) for m in (self.merchant_model, self.category_model, self.amount_model)}
        logger.info("models_loaded", extra={"extra": {"models_dir": self.models_dir, "loaded": loaded}})
        return loaded

    def get_stats(self) -> Dict[str, Any]:
        return {
            "predictions": dict(self._predictions),
            "retrains": dict(self._retrains),
            "windows": {
                "merchant": len(self.merchant_window),
                "category": len(self.category_window),
                "amount": len(self.amount_window),
            },
            "models": {m.name: m.metadata() for m in (self.merchant_model, self.category_model, self.amount_model)},
        }
