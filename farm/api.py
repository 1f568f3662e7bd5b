from __future__ import annotations

from typing import Any, Callable, Optional, TypeVar

from flask import Flask, jsonify

from farm.errors import FarmError
from farm.runner import SchedulerLoop
from farm.scheduler import BatchScheduler

T = TypeVar("T")


def create_app(scheduler: BatchScheduler, loop: Optional[SchedulerLoop] = None) -> Flask:
	app = Flask(__name__)
	app.config['scheduler'] = scheduler
	app.config['loop'] = loop

	def between_ticks(fn: Callable[[], T]) -> T:
		# Request threads must not touch the ledger or the host while a tick runs
		loop = app.config['loop']
		return fn() if loop is None else loop.read(fn)

	@app.get("/healthz")
	def healthz() -> Any:
		loop = app.config['loop']
		body = {"status": "ok", "in_flight": between_ticks(lambda: len(scheduler.ledger))}
		if loop is not None:
			body["running"] = loop.running
			body["ticks"] = loop.ticks
			body["errors"] = loop.errors
			if loop.last_error is not None:
				body["last_error"] = loop.last_error
			if loop.fault is not None:
				body["status"] = "faulted"
				body["fault"] = loop.fault.to_dict()
				return jsonify(body), 503
			if loop.stalled:
				body["status"] = "stopped"
				return jsonify(body), 503
		return jsonify(body)

	@app.get("/ledger")
	def ledger() -> Any:
		return jsonify(between_ticks(lambda: {"now_ms": scheduler.host.now_ms(), "targets": scheduler.ledger.snapshot()}))

	def ranked_targets() -> list:
		_, usable = scheduler.discover()
		ranked = scheduler.rank(usable, scheduler.model())
		return [
			dict(r.target.to_dict(), score=r.score, in_flight=len(scheduler.ledger.operations_for(r.target.name)))
			for r in ranked
		]

	@app.get("/targets")
	def targets() -> Any:
		return jsonify({"targets": between_ticks(ranked_targets)})

	@app.post("/tick")
	def tick() -> Any:
		loop = app.config['loop']
		try:
			result = loop.step() if loop is not None else scheduler.run()
		except FarmError as e:
			return jsonify({"error": e.to_dict()}), 500
		return jsonify(result.to_dict())

	@app.get("/stage")
	def stage() -> Any:
		loop = app.config['loop']
		if loop is None:
			return jsonify({"stage": "projected" if scheduler.has_requirements() else None})
		try:
			current = loop.read(loop.controller.select)
		except FarmError as e:
			return jsonify({"error": e.to_dict()}), 409
		return jsonify({"stage": current.name})

	return app
