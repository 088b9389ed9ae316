from pyeed.operator.diffusion import *
from pyeed.operator.filter import *
from pyeed.operator.stencil import *
