"""Domain vocabulary: statuses, workflows, clocks, and value objects."""
