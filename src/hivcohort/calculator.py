"""
Patient calculator interface.

A calculator derives one fact per patient (a boolean, a date or a list of
observations) from the store. It receives its collaborators (store,
metadata dictionary, other calculators, thresholds) at construction and
keeps no state between evaluations.
"""

import abc
import typing
from datetime import datetime

from stairval.notepad import Notepad

from .context import CalculationContext
from .errors import ConfigurationError
from .model import FactResult, PatientId
from .temporal import as_datetime

Params = typing.Mapping[str, typing.Any]


class PatientCalculator(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def evaluate(
            self,
            cohort: typing.Iterable[PatientId],
            params: typing.Optional[Params],
            context: CalculationContext,
            notepad: typing.Optional[Notepad] = None,
    ) -> FactResult:
        """
        Return exactly one entry for every patient of ``cohort``.
        Data-quality signals (e.g. contradictory evidence) go to ``notepad``
        when one is given; they never change the result.
        """
        raise NotImplementedError


def date_parameter(
        params: typing.Optional[Params],
        context: CalculationContext,
        name: str,
        required: bool = True,
) -> typing.Optional[datetime]:
    """
    Read a date from the evaluation parameters, falling back to the context's
    ambient cache. A missing required value is a configuration error.
    """
    value = None
    if params is not None:
        value = params.get(name)
    if value is None:
        value = context.get_from_cache(name)
    if value is None:
        if required:
            raise ConfigurationError(f"Missing required date parameter {name!r}")
        return None
    try:
        return as_datetime(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Parameter {name!r} is not a date: {value!r}") from e
