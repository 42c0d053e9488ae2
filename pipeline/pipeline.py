from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from services import config
from services.json_logger import get_json_logger
from ai_services.categorization import MerchantDirectory
from ai_services.classifier import Classifier
from detection.signature_engine import SignatureEngine
from extraction.field_extractor import FieldExtractor
from feedback.learning_loop import LearningLoop
from fusion.fusion_engine import FusionEngine
from ocr.preprocessing import ImagePreprocessor
from ocr.recognizer import Recognizer, build_recognizer
from ocr.recognizer_pool import RecognizerPool
from pipeline.orchestrator import Orchestrator
from storage.json_store import JsonFileStore
from storage.store import InMemoryStore, Store


logger = get_json_logger("statement_parser.pipeline")


@dataclass
class Pipeline:
    """Every long-lived component of the system, wired together once by the caller."""

    store: Store
    recognizer_pool: RecognizerPool
    signature_engine: SignatureEngine
    field_extractor: FieldExtractor
    classifier: Classifier
    merchant_directory: MerchantDirectory
    fusion_engine: FusionEngine
    learning_loop: LearningLoop
    orchestrator: Orchestrator

    async def start(self) -> Dict[str, Any]:
        """Warm caches from the store and load saved models."""
        patterns = await self.signature_engine.load_learned_patterns()
        merchants = await self.merchant_directory.load()
        models = self.classifier.load_models()
        summary = {"patterns": patterns, "merchants": merchants, "models": models}
        logger.info("pipeline_started", extra={"extra": summary})
        return summary

    def get_stats(self) -> Dict[str, Any]:
        return {
            "orchestrator": self.orchestrator.get_metrics(),
            "ocr": self.recognizer_pool.get_stats(),
            "detection": self.signature_engine.get_stats(),
            "classifier": self.classifier.get_stats(),
            "merchants": len(self.merchant_directory),
        }


def build_store(backend: str = "memory", store_dir: Optional[str] = None) -> Store:
    if backend == "json":
        if not store_dir:
            raise ValueError("json store needs a directory")
        return JsonFileStore(store_dir)
    if backend != "memory":
        raise ValueError(f"unknown store backend {backend!r}")
    return InMemoryStore()


def build_pipeline(
    store: Optional[Store] = None,
    recognizer: Optional[Recognizer] = None,
    ml_enabled: Optional[bool] = None,
    ocr_enabled: Optional[bool] = None,
    models_dir: Optional[str] = None,
    classifier: Optional[Classifier] = None,
) -> Pipeline:
    store = store or InMemoryStore()
    enabled_ocr = config.OCR_ENABLED if ocr_enabled is None else ocr_enabled
    recognizer = recognizer or build_recognizer(enabled_ocr)
    preprocessor = ImagePreprocessor() if config.OCR_PREPROCESS else None

    recognizer_pool = RecognizerPool(recognizer, preprocessor)
    signature_engine = SignatureEngine(store)
    field_extractor = FieldExtractor()
    classifier = classifier or Classifier(store=store, models_dir=models_dir, ml_enabled=ml_enabled)
    merchant_directory = MerchantDirectory(store)
    fusion_engine = FusionEngine()
    learning_loop = LearningLoop(store, classifier, signature_engine, merchant_directory)
    orchestrator = Orchestrator(
        signature_engine=signature_engine,
        field_extractor=field_extractor,
        classifier=classifier,
        fusion_engine=fusion_engine,
        merchant_directory=merchant_directory,
        recognizer_pool=recognizer_pool,
        store=store,
    )
    logger.info(
        "pipeline_built",
        extra={"extra": {"recognizer": recognizer.name, "merchant_model": type(classifier.merchant_model).__name__}},
    )
    return Pipeline(
        store=store,
        recognizer_pool=recognizer_pool,
        signature_engine=signature_engine,
        field_extractor=field_extractor,
        classifier=classifier,
        merchant_directory=merchant_directory,
        fusion_engine=fusion_engine,
        learning_loop=learning_loop,
        orchestrator=orchestrator,
    )
