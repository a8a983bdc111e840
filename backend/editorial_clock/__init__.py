"""Editorial Clock: deadline and escalation engine for manuscript review workflows."""
__version__ = "0.1.0"
