"""Energy models for torch-dofs."""

from torch_dofs.models.einstein import EinsteinModel
from torch_dofs.models.interface import ModelInterface
from torch_dofs.models.lennard_jones import LennardJonesModel


__all__ = ["EinsteinModel", "LennardJonesModel", "ModelInterface"]
