"""
Test Suite for the Boomerang Task Orchestrator

This package contains all tests for the orchestrator components:
- analysis, modes, cache and context isolation
- priority queue, approval gate, retry and execution dispatch
- subtask lifecycle, worker loop and results merging
- service, API and end-to-end workflows
"""
