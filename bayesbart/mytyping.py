from typing import Mapping
import numpy.typing as npt
import numpy as np

NDArrayInt = npt.NDArray[np.int_]
NDArrayFloat = npt.NDArray[np.float64]
NDArrayBool = npt.NDArray[np.bool_]
RasterLayers = Mapping[str, npt.ArrayLike]
