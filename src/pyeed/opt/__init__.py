from pyeed.opt.stop import *
from pyeed.opt.solver import *
