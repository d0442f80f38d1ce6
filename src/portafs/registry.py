"""
Portafs Capability Registry

Composes the layer modules under a package into one operation table.

Layers are tried in a fixed precedence order and the first layer to supply
a capability name wins:

    1. <package>.<platform>        for each platform, most specific first
    2. <package>.native
    3. <package>.<platform>.tools  for each platform, most specific first
    4. <package>.tools

A layer module that cannot be imported (missing module, or an optional
dependency it needs is missing) is skipped. Layer initializers run once,
in load order, after every capability has been bound.
"""

import functools
import importlib
import logging
import sys
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from portafs import proc
from portafs.config import merge_defaults
from portafs.errors import ConfigurationError
from portafs.log import enable_audit, get_audit_logger

logger = logging.getLogger(__name__)

DEFAULT_PACKAGE = "portafs.fs"

# Every operation the layers in portafs.fs know how to provide. Names in this
# tuple always exist on a CapabilitySet, bound or not.
CAPABILITIES: Tuple[str, ...] = (
    "absolute_name",
    "are_the_same_file",
    "change_dir",
    "change_dir_to_root",
    "check_md5",
    "command_at",
    "copy",
    "copy_binary",
    "copy_permissions",
    "current_dir",
    "current_user",
    "delete",
    "dir",
    "download",
    "execute",
    "execute_env",
    "execute_quiet",
    "execute_string",
    "exists",
    "export_cmd",
    "find",
    "get_md5",
    "is_actual_binary",
    "is_dir",
    "is_file",
    "is_superuser",
    "is_tool_available",
    "is_writable",
    "list_dir",
    "make_dir",
    "make_temp_dir",
    "moderate_permissions",
    "move",
    "pop_dir",
    "quiet",
    "quiet_stderr",
    "quote",
    "remove_dir_if_empty",
    "remove_dir_tree_if_empty",
    "replace_file",
    "root_of",
    "set_permissions",
    "set_time",
    "set_tool_available",
    "system_cache_dir",
    "system_temp_dir",
    "tmpname",
    "umask",
    "use_downloader",
    "which_tool",
)


class Unsupported:
    """
    Placeholder for a capability no layer provided.

    Falsy, so ``if fs.make_temp_dir:`` can probe for support. Calling it
    raises AttributeError, the same signal as any other missing member.
    """

    __slots__ = ("name",)

    def __init__(self, name: str):
        self.name = name

    def __bool__(self) -> bool:
        return False

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        raise AttributeError(f"capability '{self.name}' is not provided by any loaded layer")

    def __repr__(self) -> str:
        return f"<unsupported capability {self.name}>"


class CapabilitySet:
    """
    Resolved operation table.

    One attribute per capability name. Declared names nobody bound hold an
    Unsupported placeholder; names that are neither declared nor bound
    raise AttributeError.
    """

    def __init__(self, declared: Sequence[str] = CAPABILITIES):
        self._providers: Dict[str, str] = {}
        for name in declared:
            setattr(self, name, Unsupported(name))

    def bind(self, name: str, fn: Callable[..., Any], provider: str) -> bool:
        """
        Bind ``name`` unless a higher-precedence layer already did.

        Returns:
            True if the binding was made
        """
        if name in self._providers:
            return False
        setattr(self, name, fn)
        self._providers[name] = provider
        return True

    def names(self) -> List[str]:
        """Sorted list of bound capability names."""
        return sorted(self._providers)

    def provider(self, name: str) -> Optional[str]:
        """Module name of the layer that bound ``name``, if any."""
        return self._providers.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __len__(self) -> int:
        return len(self._providers)

    def __repr__(self) -> str:
        return f"CapabilitySet({len(self)} bound)"


class Layer:
    """
    Base class for capability layers.

    Every public method a subclass defines is a capability. Overriding
    init() registers an initializer that runs after all layers are bound.
    Layers reach other capabilities (possibly served by other layers)
    through ``self.fs``.
    """

    # Short name used in log messages
    name: str = ""

    def __init__(self, fs: "Registry"):
        self.fs = fs

    @property
    def config(self) -> Dict[str, Any]:
        """Merged configuration of the owning registry."""
        return self.fs.config

    @property
    def variables(self) -> Dict[str, str]:
        """Tool-path variables from the configuration."""
        return self.fs.config["variables"]

    def init(self) -> None:
        """Initializer hook; runs once after resolution."""

    @classmethod
    def capability_names(cls) -> List[str]:
        """Public methods this layer contributes, sorted by name."""
        reserved = set(dir(Layer))
        return sorted(
            name for name in dir(cls)
            if not name.startswith("_")
            and name not in reserved
            and callable(getattr(cls, name))
        )

    @classmethod
    def has_initializer(cls) -> bool:
        return cls.init is not Layer.init


def _format_call(args: Sequence[Any], kwargs: Mapping[str, Any]) -> str:
    parts = [repr(arg) for arg in args]
    parts.extend(f"{key}={value!r}" for key, value in kwargs.items())
    return ", ".join(parts)


class Registry:
    """
    Long-lived owner of the resolved capabilities and all process-wide
    filesystem state: verbosity, the umask and tool-availability memos,
    and the directory stack.

    Capabilities are reached as attributes::

        fs = Registry()
        fs.resolve(["linux", "unix"])
        fs.make_dir("/tmp/x")

    Not thread-safe; hosts must serialize resolve() against other use.
    """

    def __init__(self, package: str = DEFAULT_PACKAGE):
        self.package = package
        self.platforms: List[str] = []
        self.config: Dict[str, Any] = merge_defaults()
        self.ops = CapabilitySet()
        self.loaded_layers: List[str] = []
        self.initialized: List[str] = []
        self.is_verbose = False
        # Memoized for the registry's lifetime, never invalidated
        self.umask_cache: Optional[str] = None
        self.tool_available_cache: Dict[str, bool] = {}
        self.dir_stack: List[str] = []
        self._resolved = False

    def __getattr__(self, name: str) -> Any:
        # Only reached for names not found on the registry itself
        if name.startswith("_"):
            raise AttributeError(name)
        ops = self.__dict__.get("ops")
        if ops is None:
            raise AttributeError(name)
        return getattr(ops, name)

    def __repr__(self) -> str:
        return f"Registry(package={self.package!r}, platforms={self.platforms!r}, {self.ops!r})"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def resolve(
        self,
        platforms: Sequence[str],
        config: Optional[Mapping[str, Any]] = None,
    ) -> CapabilitySet:
        """
        Build the operation table for ``platforms``.

        Args:
            platforms: Platform identifiers, most specific first
            config: Caller configuration; defaults are merged underneath

        Returns:
            The new CapabilitySet (also installed as ``self.ops``)

        Raises:
            ConfigurationError: If platforms is not a sequence of non-empty
                strings or config is not a mapping
        """
        if isinstance(platforms, (str, bytes)) or not isinstance(platforms, (list, tuple)):
            raise ConfigurationError("expected a list of platform names", argument="platforms")
        for plat in platforms:
            if not isinstance(plat, str) or not plat:
                raise ConfigurationError(f"bad platform name {plat!r}", argument="platforms")

        merged = merge_defaults(config)

        if self._resolved:
            self.reset()

        self.platforms = list(platforms)
        self.config = merged

        ops = CapabilitySet()
        initializers: List[Tuple[str, Callable[[], None]]] = []
        loaded: List[str] = []

        for module_name in self.layer_order(self.platforms):
            module = self._load_layer(module_name)
            if module is None:
                continue
            layer_cls = getattr(module, "LAYER", None)
            if layer_cls is None:
                logger.debug("Module %s has no LAYER, skipping", module_name)
                continue

            layer = layer_cls(self)
            for name in layer_cls.capability_names():
                if name not in ops:
                    ops.bind(name, self._wrap(name, getattr(layer, name)), module_name)
            if layer_cls.has_initializer():
                initializers.append((module_name, layer.init))
            loaded.append(module_name)

        self.ops = ops
        self.loaded_layers = loaded
        self._resolved = True
        logger.debug("Resolved %d capabilities from %s", len(ops), ", ".join(loaded))

        if merged.get("verbose"):
            self.verbose()

        for module_name, init in initializers:
            init()
            self.initialized.append(module_name)

        return ops

    def reset(self) -> None:
        """
        Forget every binding and unload cached layer modules so the next
        resolve() imports them afresh. Verbosity and the memos survive.
        """
        self.ops = CapabilitySet()
        self.loaded_layers = []
        self.initialized = []

        prefix = self.package + "."
        for module_name in list(sys.modules):
            if module_name.startswith(prefix):
                del sys.modules[module_name]
        importlib.invalidate_caches()
        self._resolved = False

    def layer_order(self, platforms: Sequence[str]) -> List[str]:
        """Module names to try, highest precedence first."""
        order = [f"{self.package}.{plat}" for plat in platforms]
        order.append(f"{self.package}.native")
        order.extend(f"{self.package}.{plat}.tools" for plat in platforms)
        order.append(f"{self.package}.tools")

        seen = set()
        unique = []
        for name in order:
            if name not in seen:
                seen.add(name)
                unique.append(name)
        return unique

    def _load_layer(self, module_name: str):
        try:
            return importlib.import_module(module_name)
        except ImportError as e:
            logger.debug("Skipping layer %s: %s", module_name, e)
            return None

    # ------------------------------------------------------------------
    # Verbose / audit mode
    # ------------------------------------------------------------------

    def verbose(self, enabled: bool = True) -> None:
        """Toggle logging of every capability call and spawned command."""
        self.is_verbose = enabled
        if enabled:
            enable_audit()

    def _wrap(self, name: str, fn: Callable[..., Any]) -> Callable[..., Any]:
        audit = get_audit_logger()

        @functools.wraps(fn)
        def capability(*args: Any, **kwargs: Any) -> Any:
            if self.is_verbose:
                audit.info("fs.%s(%s)", name, _format_call(args, kwargs))
            return fn(*args, **kwargs)

        return capability

    def spawn(self, command: str, cwd: Optional[str] = None) -> proc.ProcessResult:
        """
        Run an external command line. All tool layers go through here.

        In verbose mode the command is logged with API keys redacted, and
        the raw (returncode, stdout, stderr) result is logged afterwards.
        """
        audit = get_audit_logger()
        if self.is_verbose:
            audit.info("spawn: %s", proc.redact(command))

        result = proc.run(command, cwd=cwd)

        if self.is_verbose:
            audit.info("Results: %r", result.as_tuple())
        return result
