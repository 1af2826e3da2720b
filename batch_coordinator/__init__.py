"""
Image Batch — Batch Coordinator

Runs batches of work items through the engine components and exposes
the command line.

Usage:
    from batch_coordinator import PipelineOrchestrator, load_work_items

    inputs = load_work_items("./images")
    report = PipelineOrchestrator(settings, "results.jsonl").run(inputs.items, backend)
"""

from batch_coordinator.orchestrator import BatchReport, PipelineOrchestrator
from batch_coordinator.inputs import InputResult, load_work_items
