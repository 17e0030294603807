"""Worker/Reviewer loop orchestration: controller, executors, registry and storage."""
