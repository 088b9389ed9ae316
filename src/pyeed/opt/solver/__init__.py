from pyeed.opt.solver.eed import *
