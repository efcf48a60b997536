"""FITS reading and writing for PPV cubes and moment maps.

FITS stores cubes as ``(channel, y, x)`` in NumPy order; the engine works
on ``(x, y, channel)``. Both directions transpose, so a cube written by
:func:`write_cube` reads back unchanged.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional
import warnings

import numpy as np
from astropy.io import fits
from astropy.wcs import WCS, FITSFixedWarning

from ppv_baseline.engine.cube_api import Cube

__all__ = ["read_cube", "write_cube", "read_moment_map", "write_moment_map", "spectral_axis"]

logger = logging.getLogger(__name__)

VARIANCE_EXTNAME = "VARIANCE"
RECEPTOR_EXTNAME = "RECEPTORS"


def _squeeze_to(data: np.ndarray, ndim: int) -> np.ndarray:
    arr = np.asarray(data)
    while arr.ndim > ndim and arr.shape[0] == 1:
        arr = arr[0]
    if arr.ndim != ndim:
        raise ValueError(f"Expected a {ndim}-D image, got shape {np.shape(data)}")
    return arr


def spectral_axis(header: fits.Header, nchan: int) -> np.ndarray:
    """World coordinates of every channel along FITS axis 3."""

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", FITSFixedWarning)
            wcs = WCS(header)
        spec = wcs.spectral
        if spec.naxis == 1:
            return np.asarray(spec.pixel_to_world_values(np.arange(nchan)), dtype=float)
    except (ValueError, KeyError, MemoryError) as exc:
        logger.warning("Could not build spectral WCS: %s; using header cards", exc)
    crval = float(header.get("CRVAL3", 0.0))
    cdelt = float(header.get("CDELT3", 1.0))
    crpix = float(header.get("CRPIX3", 1.0))
    return crval + (np.arange(nchan) + 1.0 - crpix) * cdelt


def read_cube(path: str | os.PathLike[str], *, hdu: int | str = 0, name: Optional[str] = None) -> Cube:
    cube_path = Path(path)
    with fits.open(cube_path) as hdul:
        primary = hdul[hdu]
        header = primary.header.copy()
        data = _squeeze_to(primary.data, 3).astype(float).T
        variance = None
        if VARIANCE_EXTNAME in hdul:
            variance = _squeeze_to(hdul[VARIANCE_EXTNAME].data, 3).astype(float).T
        meta = {}
        if RECEPTOR_EXTNAME in hdul:
            meta["receptors"] = np.asarray(hdul[RECEPTOR_EXTNAME].data["RECEPTOR"]).astype(str).reshape(
                data.shape[1], data.shape[0]
            ).T
    for card, key in (("MAP_PA", "map_pa"), ("SCAN_PA", "scan_pa")):
        if card in header:
            meta[key] = header[card]
    spectral = spectral_axis(header, data.shape[2])
    logger.info("Read cube %s with shape %s", cube_path.name, data.shape)
    return Cube(
        data=data,
        spectral=spectral,
        header=header,
        variance=variance,
        meta=meta,
        name=name or cube_path.stem,
    )


def write_cube(cube: Cube, path: str | os.PathLike[str], *, overwrite: bool = False,
               history: Optional[str] = None) -> Path:
    out_path = Path(path)
    header = cube.header.copy() if cube.header is not None else fits.Header()
    if "CRVAL3" not in header and cube.nchan > 1:
        steps = np.diff(cube.spectral)
        if np.allclose(steps, steps[0]):
            header["CRPIX3"] = 1.0
            header["CRVAL3"] = float(cube.spectral[0])
            header["CDELT3"] = float(steps[0])
        else:
            logger.warning("Spectral axis of %s is not linear; it is not stored in the header", cube.name)
    if history:
        header.add_history(history)
    hdus = [fits.PrimaryHDU(data=np.ascontiguousarray(cube.data.T), header=header)]
    if cube.variance is not None:
        hdus.append(fits.ImageHDU(data=np.ascontiguousarray(cube.variance.T), name=VARIANCE_EXTNAME))
    receptors = cube.meta.get("receptors")
    if receptors is not None:
        names = np.asarray(receptors).astype(str).T.ravel()
        column = fits.Column(name="RECEPTOR", format=f"{max(1, max(len(n) for n in names))}A", array=names)
        hdus.append(fits.BinTableHDU.from_columns([column], name=RECEPTOR_EXTNAME))
    fits.HDUList(hdus).writeto(out_path, overwrite=overwrite)
    logger.info("Wrote cube %s", out_path)
    return out_path


def read_moment_map(path: str | os.PathLike[str], *, hdu: int | str = 0) -> np.ndarray:
    with fits.open(Path(path)) as hdul:
        return _squeeze_to(hdul[hdu].data, 2).astype(float).T.copy()


def write_moment_map(moment_map: np.ndarray, path: str | os.PathLike[str], *,
                     header: Optional[fits.Header] = None, overwrite: bool = False) -> Path:
    out_path = Path(path)
    fits.PrimaryHDU(data=np.ascontiguousarray(np.asarray(moment_map, dtype=float).T), header=header).writeto(
        out_path, overwrite=overwrite
    )
    return out_path
