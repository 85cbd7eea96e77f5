"""Grid I/O.

The simulation reads and writes grids by name through a ``GridStore``:

  - ``MemoryGridStore`` keeps grids in a dict; used when the simulation is
    embedded in another program and in tests.
  - ``RasterGridStore`` maps names to single-band GeoTIFFs in a directory
    (rasterio) and writes point layers as GeoPackages (geopandas).

Written grids carry a title and the simulated date they describe.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import rasterio
from rasterio import Affine
from shapely.geometry import Point

from pops_sim.date import Date

logger = logging.getLogger(__name__)

OutsideEvent = Tuple[int, int, int]  # (run number from 1, row, col)


class GridStore(ABC):
    """Named grid storage used by the simulation engine."""

    @abstractmethod
    def read(self, name: str) -> np.ndarray:
        """Return the grid called ``name``."""

    @abstractmethod
    def write(self, grid: np.ndarray, name: str, title: str = "",
              date: Optional[Date] = None) -> None:
        """Store ``grid`` as ``name``, replacing any existing grid."""

    @abstractmethod
    def write_points(self, events: Sequence[OutsideEvent], name: str,
                     title: str = "", date: Optional[Date] = None) -> None:
        """Store off-grid dispersal events as a point layer."""

    @property
    @abstractmethod
    def resolution(self) -> Tuple[float, float]:
        """(ew_res, ns_res): cell width and height in map units."""


# ═══════════════════════════════════════════════════════════════════════
# IN-MEMORY STORE
# ═══════════════════════════════════════════════════════════════════════

class MemoryGridStore(GridStore):
    """Grids kept in memory.

    Args:
        grids: Initial grids by name (copied on read).
        resolution: (ew_res, ns_res) of every grid.
    """

    def __init__(self, grids: Optional[Dict[str, np.ndarray]] = None,
                 resolution: Tuple[float, float] = (1.0, 1.0)):
        self.grids: Dict[str, np.ndarray] = dict(grids or {})
        self._resolution = (float(resolution[0]), float(resolution[1]))
        self.written: List[str] = []                    # names in write order
        self.metadata: Dict[str, Tuple[str, Optional[Date]]] = {}
        self.points: Dict[str, List[OutsideEvent]] = {}

    def read(self, name: str) -> np.ndarray:
        if name not in self.grids:
            raise KeyError(f"Grid '{name}' not found")
        return np.array(self.grids[name], copy=True)

    def write(self, grid, name, title="", date=None):
        self.grids[name] = np.array(grid, copy=True)
        self.metadata[name] = (title, date)
        self.written.append(name)

    def write_points(self, events, name, title="", date=None):
        self.points[name] = list(events)
        self.metadata[name] = (title, date)
        self.written.append(name)

    @property
    def resolution(self):
        return self._resolution


# ═══════════════════════════════════════════════════════════════════════
# GEOTIFF STORE
# ═══════════════════════════════════════════════════════════════════════

class RasterGridStore(GridStore):
    """GeoTIFF grids in a directory.

    A name maps to ``<directory>/<name>.tif`` unless it already is a path
    to a ``.tif`` file. Georeferencing (transform, CRS) of written grids
    is copied from the first grid read.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.transform: Optional[Affine] = None
        self.crs = None

    def path_for(self, name: str) -> Path:
        path = Path(name)
        if path.suffix.lower() in (".tif", ".tiff"):
            return path if path.is_absolute() else self.directory / path
        return self.directory / f"{name}.tif"

    def read(self, name: str) -> np.ndarray:
        path = self.path_for(name)
        if not path.exists():
            raise FileNotFoundError(f"Grid '{name}' not found at {path}")
        with rasterio.open(path) as src:
            grid = src.read(1)
            if self.transform is None:
                self.transform = src.transform
                self.crs = src.crs
        return grid

    def write(self, grid, name, title="", date=None):
        grid = np.asarray(grid)
        if np.issubdtype(grid.dtype, np.integer):
            grid = grid.astype(np.int32)
        else:
            grid = grid.astype(np.float64)
        path = self.path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        profile = {
            "driver": "GTiff",
            "height": grid.shape[0],
            "width": grid.shape[1],
            "count": 1,
            "dtype": grid.dtype.name,
            "transform": self.transform if self.transform is not None else Affine.identity(),
        }
        if self.crs is not None:
            profile["crs"] = self.crs
        with rasterio.open(path, "w", **profile) as dst:
            dst.write(grid, 1)
            dst.update_tags(title=title, date="" if date is None else str(date))
        logger.debug("Wrote %s", path)

    def cell_center(self, row: int, col: int) -> Tuple[float, float]:
        transform = self.transform if self.transform is not None else Affine.identity()
        return transform * (col + 0.5, row + 0.5)

    def write_points(self, events, name, title="", date=None):
        if not events:
            logger.info("No dispersal events outside the grid, %s not written", name)
            return
        path = self.directory / f"{name}.gpkg"
        path.parent.mkdir(parents=True, exist_ok=True)
        frame = gpd.GeoDataFrame(
            {
                "run": [run for run, _, _ in events],
                "row": [row for _, row, _ in events],
                "col": [col for _, _, col in events],
            },
            geometry=[Point(self.cell_center(row, col)) for _, row, col in events],
            crs=self.crs,
        )
        frame.to_file(path, layer=name, driver="GPKG")
        logger.debug("Wrote %d points to %s (%s)", len(frame), path, title)

    @property
    def resolution(self):
        if self.transform is None:
            raise RuntimeError("Resolution is unknown until a grid has been read")
        return (abs(self.transform.a), abs(self.transform.e))
