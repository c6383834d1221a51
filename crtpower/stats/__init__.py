"""Statistical building blocks: data generation, model fitting, the GLMM solver and multiplicity adjustment."""

from . import data_generation as data_generation
from . import fitting as fitting
from . import glmm_solver as glmm_solver
from . import multitest as multitest
