"""MIDI Studio Orchestrator: asynchronous MIDI generation and render pipeline."""
