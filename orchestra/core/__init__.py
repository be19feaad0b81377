"""Orchestration core: state machine, pipeline executor, intake, observer."""
