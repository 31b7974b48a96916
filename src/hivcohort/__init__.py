"""
hivcohort: patient-level HIV care facts and cohort composition.
"""

__version__ = "0.1.0"
