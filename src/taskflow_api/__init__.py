"""Task execution pipeline service: classify, plan, run and report."""
