"""Page-side runtime.

Everything in this package runs on the far side of the sandbox boundary:
the controller only ever reaches it through ``BrowserHost.inject``.
"""

from tabwright.injected.handles import HandleRegistry
from tabwright.injected.operations import OPERATIONS, OperationName, registered_operation_names
from tabwright.injected.script import InjectedScript, PageDocument, WindowState

__all__ = [
    'HandleRegistry',
    'InjectedScript',
    'OPERATIONS',
    'OperationName',
    'PageDocument',
    'WindowState',
    'registered_operation_names',
]
