"""Batch orchestration for the video maker pipeline.

Submodules are imported explicitly (``workflows.batch_orchestrator``,
``workflows.video_maker_workflow``...) so that loading the Temporal workflow
inside the sandbox does not pull in the HTTP client stack.
"""
