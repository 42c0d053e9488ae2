from __future__ import annotations

from fastapi import HTTPException, Request, status

from pipeline.pipeline import Pipeline


def get_pipeline(request: Request) -> Pipeline:
	"""
	Resolve the pipeline built by the app factory.
	Route handlers never construct components themselves.
	"""
	pipeline = getattr(request.app.state, "pipeline", None)
	if pipeline is None:
		raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline not initialised")
	return pipeline
