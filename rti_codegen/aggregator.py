"""
Declaration/emission aggregator: collects arrays and routines, checks that
every body only references declared arrays, and renders the C files
"""

import logging
from dataclasses import dataclass
from typing import Dict, List

from .config import ProblemConfiguration
from .core import NamedArray, StorageClass, ConfigurationError
from .emitters import CCodeEmitter
from .routine import Routine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedCode:
    header_name: str
    header: str
    source_name: str
    source: str


class ProgramAggregator:
    def __init__(self, config: ProblemConfiguration):
        self.config = config
        self.arrays: Dict[str, NamedArray] = {}
        self.routines: List[Routine] = []
        self.defines: Dict[str, int] = {}

    def declare(self, array: NamedArray):
        if array.storage == StorageClass.LOCAL:
            raise ConfigurationError(array.name, "local arrays are declared by their routine")
        if array.name in self.arrays:
            raise ConfigurationError(array.name, "declared twice")
        self.arrays[array.name] = array

    def declare_all(self, arrays):
        for array in arrays:
            self.declare(array)

    def add_routine(self, routine: Routine):
        if not routine.sealed:
            raise ConfigurationError(routine.name, "routine is still being assembled")
        if any(r.name == routine.name for r in self.routines):
            raise ConfigurationError(routine.name, "routine registered twice")
        self.routines.append(routine)

    def define(self, name: str, value: int):
        self.defines[name] = value

    def routine(self, name: str) -> Routine:
        for routine in self.routines:
            if routine.name == name:
                return routine
        raise KeyError(name)

    def validate(self):
        """Every body references declared arrays, its own parameters or locals only"""
        registered = {id(r) for r in self.routines}
        for routine in self.routines:
            own = {id(p.array) for p in routine.parameters}
            own.update(id(a) for a in routine.locals.values())
            for array in routine.referenced_arrays():
                if array.storage == StorageClass.LOCAL:
                    if id(array) not in own:
                        raise ConfigurationError(array.name, f"local array not owned by {routine.name}")
                elif self.arrays.get(array.name) is not array:
                    raise ConfigurationError(array.name, f"referenced by {routine.name} but not declared")
            for called in routine.called_routines():
                if id(called) not in registered:
                    raise ConfigurationError(called.name, f"called by {routine.name} but not registered")
        logger.debug(f"Validated {len(self.routines)} routines against {len(self.arrays)} arrays")

    def declarations(self) -> Dict[StorageClass, List[NamedArray]]:
        groups: Dict[StorageClass, List[NamedArray]] = {s: [] for s in StorageClass}
        for array in self.arrays.values():
            groups[array.storage].append(array)
        return groups

    def emit(self, basename: str) -> GeneratedCode:
        self.validate()
        emitter = CCodeEmitter(self.config)
        groups = self.declarations()
        header_name = f"{basename}.h"
        source_name = f"{basename}.c"
        guard = f"{basename.upper()}_H"
        header = emitter.emit_header(self.defines, groups, self.routines, guard)
        source = emitter.emit_source(header_name, groups[StorageClass.CONSTANT], self.routines)
        logger.info(f"Emitted {header_name} and {source_name}")
        return GeneratedCode(header_name, header, source_name, source)
