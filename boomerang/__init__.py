"""
Boomerang Task Orchestrator

Decomposes a high-level work item into isolated subtasks, schedules them on an
SLA-aware priority queue with a bounded worker loop, and merges their outputs
back into a single result for the calling agent.

Components:
- Orchestrator: deterministic complexity scoring and task decomposition
  * Memoized analysis keyed by a normalized description/context fingerprint
  * Keyword families map to design, implementation, testing, deployment subtasks
- Modes: Orchestrator, Code, Architect, Debug, Test, Review, Docs
  * Keyword-scored selection with a task-type fallback table
  * Required context keys reported as non-fatal warnings
- Context Isolation: explicit downward context, single upward artifact
  * Sensitive keys redacted recursively
  * Conversation history bounded to the last 50 entries
- Approval Gate: impact scoring and rule-based auto-approval
  * Decisions are terminal, request and subtask updated in lockstep
- Priority Queue: high > medium > low FIFO tiers with SLA tagging
  * Forced expiry sweep at 2x the tier wait time
- Subtask Manager: lifecycle state machine and the 1s worker tick
  * Concurrency bounded by the executing set, retries are re-enqueues
- Execution Dispatcher: simulation, shell (allow-listed), HTTP (retried),
  delegated and custom strategies
- Results Merger: combined outputs, final summary, progress
"""

__version__ = "1.0.0"
