"""
Relive Upgraders

Pluggable strategies migrating one category of runtime value each, arranged
in groups under the engine's root group.
"""

from relive.upgraders.base import GroupOrder, InstanceUpgrader
from relive.upgraders.cached import CachedUpgrader
from relive.upgraders.default import DefaultUpgrader
from relive.upgraders.functions import (
    CellUpgrader,
    FunctionErrorKind,
    FunctionUpgrader,
    GeneratorUpgrader,
    MethodUpgrader,
    PartialUpgrader,
    get_error_kind,
)
from relive.upgraders.groups import (
    CollectionsUpgraderGroup,
    FunctionUpgraderGroup,
    ReflectionUpgraderGroup,
    RootUpgraderGroup,
    UpgraderGroup,
)
from relive.upgraders.keyed import DictUpgrader, FrozenSetUpgrader, SetUpgrader
from relive.upgraders.reflection import (
    DescriptorUpgrader,
    EnumMemberUpgrader,
    ModuleUpgrader,
    TypeUpgrader,
    WeakrefUpgrader,
)
from relive.upgraders.sequences import SequenceUpgrader, TupleUpgrader
from relive.upgraders.skip import AutoSkipUpgrader, SkipUpgrader

#: Built-in upgraders in registration order; groups precede their members.
DEFAULT_UPGRADERS = [
    SkipUpgrader,
    CachedUpgrader,
    ReflectionUpgraderGroup,
    FunctionUpgraderGroup,
    CollectionsUpgraderGroup,
    AutoSkipUpgrader,
    DefaultUpgrader,
    ModuleUpgrader,
    TypeUpgrader,
    DescriptorUpgrader,
    EnumMemberUpgrader,
    WeakrefUpgrader,
    FunctionUpgrader,
    CellUpgrader,
    MethodUpgrader,
    PartialUpgrader,
    GeneratorUpgrader,
    SequenceUpgrader,
    TupleUpgrader,
    DictUpgrader,
    SetUpgrader,
    FrozenSetUpgrader,
]

__all__ = [
    "DEFAULT_UPGRADERS",
    "GroupOrder",
    "InstanceUpgrader",
    "UpgraderGroup",
    "RootUpgraderGroup",
    "ReflectionUpgraderGroup",
    "FunctionUpgraderGroup",
    "CollectionsUpgraderGroup",
    "SkipUpgrader",
    "AutoSkipUpgrader",
    "CachedUpgrader",
    "DefaultUpgrader",
    "ModuleUpgrader",
    "TypeUpgrader",
    "DescriptorUpgrader",
    "EnumMemberUpgrader",
    "WeakrefUpgrader",
    "FunctionUpgrader",
    "FunctionErrorKind",
    "get_error_kind",
    "CellUpgrader",
    "MethodUpgrader",
    "PartialUpgrader",
    "GeneratorUpgrader",
    "SequenceUpgrader",
    "TupleUpgrader",
    "DictUpgrader",
    "SetUpgrader",
    "FrozenSetUpgrader",
]
