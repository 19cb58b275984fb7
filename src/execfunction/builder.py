"""Child command-line builder routines.

A function crosses the process boundary only as a name: module, owning
type and function.  :func:`identity_from_callable` refuses callables that
carry state the child could not rebuild from those names.
"""

import collections.abc
import functools
import inspect
import os
import sys
import typing
from collections.abc import Callable
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from types import ModuleType

from execfunction.host import HostLaunchPlan

SEARCH_PATH_FLAG: str = "--path"
_TRUE_TOKEN: str = "true"
_FALSE_TOKEN: str = "false"
_AWAITABLE_ORIGINS: tuple[object, ...] = (
    collections.abc.Awaitable,
    collections.abc.Coroutine,
)


@dataclass(frozen=True)
class FunctionIdentity:
    """Name of a function the child can import and call.

    ``type_name`` is the dotted qualified name of the owning class, or the
    empty string for a module-level function.
    """

    module_name: str
    type_name: str
    method_name: str

    @property
    def qualname(self) -> str:
        """Return the qualified name inside the module.

        :returns: ``Type.method`` or ``function``.
        """
        if len(self.type_name) == 0:
            return self.method_name
        return f"{self.type_name}.{self.method_name}"


@dataclass(frozen=True)
class DebuggerAttachRequest:
    """Whether the child should ask the requester's debugger to attach."""

    enabled: bool = False
    requester_pid: int = 0


@dataclass(frozen=True)
class InvocationRequest:
    """Everything the child needs to find and call one function."""

    identity: FunctionIdentity
    args: tuple[str, ...] = ()
    debugger_attach: DebuggerAttachRequest = field(default_factory=DebuggerAttachRequest)
    search_paths: tuple[str, ...] = ()


def _main_module_name() -> tuple[str, str | None]:
    """Return the importable name and root of the ``__main__`` module.

    :returns: Tuple of ``(module_name, search_root)``.
    :raises ValueError: If ``__main__`` has no importable name.
    """
    main_module: ModuleType | None = sys.modules.get("__main__")
    module_spec: object = getattr(main_module, "__spec__", None)
    spec_name: object = getattr(module_spec, "name", None)
    main_file: object = getattr(main_module, "__file__", None)
    has_file: bool = isinstance(main_file, str)

    # Started with -m: the module is loaded as __main__, never under its own name.
    if isinstance(spec_name, str) is True and spec_name != "__main__":
        if has_file is False:
            return spec_name, None
        return spec_name, _import_root(main_file, spec_name)

    if has_file is False:
        raise ValueError("Functions of an interactive __main__ module cannot be started by name")
    main_path: Path = Path(main_file).resolve()
    return main_path.stem, str(main_path.parent)


def _owner_identity(owner: type, method_name: str) -> FunctionIdentity:
    """Build the identity of a function reached through ``owner``.

    :param owner: Class that defines the function.
    :param method_name: Function name.
    :returns: Function identity.
    """
    return FunctionIdentity(owner.__module__, owner.__qualname__, method_name)


def _slot_attribute_name(owner: type, slot: str) -> str:
    if slot.startswith("__") is True and slot.endswith("__") is False:
        return f"_{owner.__name__.lstrip('_')}{slot}"
    return slot


def instance_state_names(instance: object) -> list[str]:
    """List the attributes that hold state on ``instance``.

    Both ``__dict__`` entries and assigned ``__slots__`` of every class in
    the MRO count.

    :param instance: Object a method is bound to.
    :returns: Sorted attribute names; empty for a stateless instance.
    """
    names: set[str] = set(getattr(instance, "__dict__", {}))
    for klass in type(instance).__mro__:
        slots: object = klass.__dict__.get("__slots__", ())
        if isinstance(slots, str) is True:
            slots = (slots,)
        for slot in slots:
            if slot in ("__dict__", "__weakref__"):
                continue
            attribute_name: str = _slot_attribute_name(klass, slot)
            if hasattr(instance, attribute_name) is True:
                names.add(attribute_name)
    return sorted(names)


def identity_from_callable(function: Callable[..., object]) -> FunctionIdentity:
    """Derive the name-only identity of ``function``.

    Accepted: module-level functions, functions reached through a class
    (static methods and plain functions), class methods, and bound methods
    of instances that hold no instance attributes.

    :param function: Callable to start in a child process.
    :returns: Function identity.
    :raises ValueError: If the callable carries state or is not addressable by name.
    :raises TypeError: If ``function`` is not a Python function or method.
    """
    if isinstance(function, functools.partial) is True:
        raise ValueError("functools.partial objects carry bound arguments and cannot be started by name")

    if inspect.ismethod(function) is True:
        bound_self: object = function.__self__
        method_name: str = function.__func__.__name__
        if isinstance(bound_self, type) is True:
            owner: type = bound_self
        else:
            instance_state: list[str] = instance_state_names(bound_self)
            if len(instance_state) > 0:
                attribute_names: str = ", ".join(instance_state)
                raise ValueError(f"Field marshaling is not supported: {attribute_names}")
            owner = type(bound_self)
        if "<" in owner.__qualname__:
            raise ValueError(f"{owner.__qualname__} is defined inside a function and cannot be imported")
        return _owner_identity(owner, method_name)

    if inspect.isfunction(function) is False:
        raise TypeError(f"Expected a function or method, got {type(function).__name__}")

    qualname: str = function.__qualname__
    if "<" in qualname:
        raise ValueError(f"{qualname} is a lambda or a local function and cannot be imported by name")
    type_name, _, method_name = qualname.rpartition(".")
    if function.__closure__ is not None:
        captured: list[str] = []
        for free_name in function.__code__.co_freevars:
            # Zero-argument super() makes the compiler add a __class__ cell.
            if free_name == "__class__" and len(type_name) > 0:
                continue
            captured.append(free_name)
        if len(captured) > 0:
            free_names: str = ", ".join(captured)
            raise ValueError(f"{qualname} closes over {free_names}; captured state cannot cross processes")

    return FunctionIdentity(function.__module__, type_name, method_name)


def resolve_qualname(root: object, qualname: str) -> object:
    """Resolve a dotted qualified name from ``root``.

    :param root: Object to start from, usually a module.
    :param qualname: Dotted attribute path.
    :returns: Resolved object.
    :raises AttributeError: If one path component is missing.
    """
    current: object = root
    for part in qualname.split("."):
        current = getattr(current, part)
    return current


def needs_instance(owner: type, method_name: str) -> bool:
    """Report whether ``owner.method_name`` must be called on a fresh instance.

    :param owner: Owning class.
    :param method_name: Function name.
    :returns: ``True`` for plain functions defined on the class.
    """
    static_attribute: object = inspect.getattr_static(owner, method_name, None)
    if isinstance(static_attribute, (staticmethod, classmethod)) is True:
        return False
    return inspect.isfunction(static_attribute)


def _expects_instance(function: Callable[..., object]) -> bool:
    """Report whether a plain function reached through its class needs ``self``.

    :param function: Callable passed by the caller.
    :returns: ``True`` when the first parameter is the instance.
    """
    if inspect.isfunction(function) is False:
        return False
    type_name: str = function.__qualname__.rpartition(".")[0]
    if len(type_name) == 0:
        return False
    module: ModuleType | None = sys.modules.get(function.__module__)
    try:
        owner: object = resolve_qualname(module, type_name)
    except AttributeError:
        return False
    if isinstance(owner, type) is False:
        return False
    return needs_instance(owner, function.__name__)


def _unwrap_function(function: Callable[..., object]) -> Callable[..., object]:
    if inspect.ismethod(function) is True:
        return function.__func__
    return function


def _is_awaitable_annotation(annotation: object) -> bool:
    origin: object = typing.get_origin(annotation)
    if origin in _AWAITABLE_ORIGINS:
        return True
    return annotation in _AWAITABLE_ORIGINS


def validate_function_shape(function: Callable[..., object], has_args: bool) -> None:
    """Check that ``function`` can be driven by the child entry point.

    :param function: Callable to start.
    :param has_args: Whether the caller supplies string arguments.
    :raises ValueError: If the parameters or return annotation are unsupported.
    """
    signature: inspect.Signature = inspect.signature(function)
    positional: list[inspect.Parameter] = []
    for parameter in signature.parameters.values():
        if parameter.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD):
            positional.append(parameter)
            continue
        if parameter.kind == inspect.Parameter.KEYWORD_ONLY and parameter.default is inspect.Parameter.empty:
            raise ValueError(f"function has a required keyword-only parameter: {parameter.name}")

    if _expects_instance(function) is True and len(positional) > 0:
        positional = positional[1:]
    if len(positional) > 1:
        raise ValueError("function takes more than one argument")
    if has_args is True and len(positional) == 0:
        raise ValueError("function takes no arguments but arguments were given")

    annotation: object = signature.return_annotation
    if annotation is inspect.Signature.empty or isinstance(annotation, str) is True:
        return
    if annotation is None or annotation is type(None):
        return
    if isinstance(annotation, type) is True and issubclass(annotation, int) is True:
        return
    if _is_awaitable_annotation(annotation) is True:
        return
    if inspect.iscoroutinefunction(_unwrap_function(function)) is True:
        return
    raise ValueError(f"function has an invalid return type: {annotation!r}")


def module_search_root(module_name: str) -> str | None:
    """Return the ``sys.path`` entry a loaded module was imported from.

    :param module_name: Fully qualified module name.
    :returns: Import root directory, or ``None`` for modules without a file.
    """
    module: ModuleType | None = sys.modules.get(module_name)
    module_file: object = getattr(module, "__file__", None)
    if isinstance(module_file, str) is False:
        return None
    return _import_root(module_file, module_name)


def _import_root(module_file: str, module_name: str) -> str:
    """Walk up from a module file to the directory its dotted name is relative to.

    :param module_file: Path of the module source file.
    :param module_name: Fully qualified module name.
    :returns: Import root directory.
    """
    root: Path = Path(module_file).resolve().parent
    depth: int = module_name.count(".")
    if Path(module_file).stem == "__init__":
        depth += 1
    for _ in range(depth):
        root = root.parent
    return str(root)


def build_invocation_request(
    function: Callable[..., object],
    args: Sequence[str] | None = None,
    attach_debugger: bool = False,
) -> InvocationRequest:
    """Validate ``function`` and describe one child invocation.

    :param function: Callable to run in the child.
    :param args: String arguments handed to the function.
    :param attach_debugger: Ask the child to attach this process's debugger.
    :returns: Invocation request.
    :raises ValueError: If the callable cannot be started by name.
    :raises TypeError: If an argument is not a string.
    """
    if isinstance(args, (str, bytes)) is True:
        raise TypeError("args must be a sequence of strings, not a single string")
    identity: FunctionIdentity = identity_from_callable(function)
    validate_function_shape(function, args is not None and len(args) > 0)

    arguments: tuple[str, ...] = ()
    if args is not None:
        for argument in args:
            if isinstance(argument, str) is False:
                raise TypeError(f"function arguments must be strings, got {type(argument).__name__}")
        arguments = tuple(args)

    search_paths: list[str] = []
    if identity.module_name == "__main__":
        main_name, main_root = _main_module_name()
        identity = FunctionIdentity(main_name, identity.type_name, identity.method_name)
        if main_root is not None:
            search_paths.append(main_root)
    else:
        root: str | None = module_search_root(identity.module_name)
        if root is not None:
            search_paths.append(root)

    return InvocationRequest(
        identity=identity,
        args=arguments,
        debugger_attach=DebuggerAttachRequest(enabled=attach_debugger, requester_pid=os.getpid()),
        search_paths=tuple(search_paths),
    )


def encode_bool(value: bool) -> str:
    """Encode a boolean command-line token.

    :param value: Boolean value.
    :returns: ``"true"`` or ``"false"``.
    """
    if value is True:
        return _TRUE_TOKEN
    return _FALSE_TOKEN


def build_child_arguments(plan: HostLaunchPlan, request: InvocationRequest) -> list[str]:
    """Build the argument vector that follows the executable.

    Layout: launch prefix, ``--path`` pairs, module, type, method, debugger
    flag, requester pid, then the user arguments.  The debugger fields are
    always present so the child can decode positionally.

    :param plan: Host launch plan.
    :param request: Invocation request.
    :returns: Child arguments, excluding the executable.
    """
    arguments: list[str] = list(plan.prefix_arguments)
    if plan.shape != "frozen":
        for search_path in request.search_paths:
            arguments.extend([SEARCH_PATH_FLAG, search_path])

    identity: FunctionIdentity = request.identity
    arguments.extend([identity.module_name, identity.type_name, identity.method_name])
    arguments.append(encode_bool(request.debugger_attach.enabled))
    arguments.append(str(request.debugger_attach.requester_pid))
    arguments.extend(request.args)
    return arguments
