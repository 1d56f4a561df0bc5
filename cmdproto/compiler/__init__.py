"""Command protocol compiler."""

from .classifier import ClassifierTables as ClassifierTables
from .classifier import CommandClassifier as CommandClassifier
from .classifier import Dispatch as Dispatch
from .classifier import DispatchRoute as DispatchRoute
from .classifier import TransportDenial as TransportDenial
from .classifier import classify as classify
from .compiler import CompiledProtocol as CompiledProtocol
from .compiler import CompilerOptions as CompilerOptions
from .compiler import compile_protocol as compile_protocol
from .errors import *
from .fingerprint import Fingerprint as Fingerprint
from .fingerprint import ProtocolRevision as ProtocolRevision
from .model import load_model as load_model
from .model import read_model as read_model
from .packer import AlignmentEntry as AlignmentEntry
from .packer import PaddedLayout as PaddedLayout
from .packer import StructPacker as StructPacker
from .packer import pack as pack
from .types import *
