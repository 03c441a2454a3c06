"""
faultline - typed effects for calling untrusted data sources.

Build a lazy :class:`Effect`, hand it an environment of capabilities, and get an
:class:`Outcome` back in which every failure mode is a typed value::

    from faultline import Failure, Shape, Success, ValidationSchema, http, run
    from faultline.transport import HttpxTransport

    class ItemDetail(Shape):
        data_field: str
        correct_field_name: str

    ITEM = ValidationSchema(ItemDetail)

    outcome = await run(
        http.fetch_json("http://localhost:3000/items/1", ITEM),
        {"transport": HttpxTransport()},
    )
    match outcome:
        case Success(item):
            ...
        case Failure(fault):
            ...
"""

from faultline import http
from faultline.clock import CLOCK, Clock, ClockFault, SystemClock
from faultline.config import RuntimeConfig
from faultline.do import EffectGenerator, do
from faultline.effect import (
    Effect,
    access,
    acquire_release,
    fail,
    from_fallible_call,
    from_outcome,
    panic,
    pure,
    sequence,
    suspend,
    traverse,
    unit,
)
from faultline.environment import Environment, make_environment
from faultline.errors import (
    Cancelled,
    Fault,
    MissingCapability,
    Panic,
    PanicKind,
    StatusFault,
    SyntaxFault,
    TimedOut,
    TransportFault,
    UnsafeUnwrapError,
    ValidationFailure,
)
from faultline.outcome import Failure, Outcome, Success, failure, success
from faultline.rawdata import RawTree, parse_bytes
from faultline.runtime import (
    CancellationSignal,
    RunHandle,
    Runtime,
    run,
    run_sync,
    spawn,
)
from faultline.schema import FieldViolation, Issue, Shape, ValidationSchema, parse
from faultline.transport import TRANSPORT, RawResponse, Request, Transport

__all__ = [
    # Outcome
    "Outcome",
    "Success",
    "Failure",
    "success",
    "failure",
    # Effect
    "Effect",
    "EffectGenerator",
    "do",
    "pure",
    "fail",
    "panic",
    "unit",
    "access",
    "suspend",
    "from_outcome",
    "from_fallible_call",
    "acquire_release",
    "sequence",
    "traverse",
    # Runtime
    "Runtime",
    "RuntimeConfig",
    "RunHandle",
    "CancellationSignal",
    "run",
    "run_sync",
    "spawn",
    # Environment / capabilities
    "Environment",
    "make_environment",
    "CLOCK",
    "Clock",
    "ClockFault",
    "SystemClock",
    "TRANSPORT",
    "Transport",
    "Request",
    "RawResponse",
    "RawTree",
    "parse_bytes",
    "http",
    # Validation
    "ValidationSchema",
    "Shape",
    "FieldViolation",
    "Issue",
    "parse",
    # Faults
    "Fault",
    "TransportFault",
    "StatusFault",
    "SyntaxFault",
    "ValidationFailure",
    "MissingCapability",
    "Cancelled",
    "TimedOut",
    "Panic",
    "PanicKind",
    "UnsafeUnwrapError",
]
