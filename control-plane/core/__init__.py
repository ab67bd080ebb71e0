"""Fleet orchestration core: remote execution, lifecycle controllers and metrics"""
