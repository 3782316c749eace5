"""Task execution and recovery engine.

The engine sequences a fixed pipeline of long-running external operations on
a single workstation:

- Exit-code classification per tool and a retry policy engine that turns one
  external invocation into a final task outcome.
- A best-effort JSON state document so that an interrupted run can be
  recognised after a crash or restart and partially resumed.
- A resilience manager that moves the application off a network share before
  anything else starts, since a network driver update can make the share
  vanish mid-run.
- A sequential orchestrator with one error boundary per task.
"""
