"""Types used across torch-dofs."""

from typing import Literal

import torch


ModelKey = Literal["energy", "forces", "stress"]
ModelOutput = dict[ModelKey, torch.Tensor]

IndexLike = torch.Tensor | list[int] | tuple[int, ...]
