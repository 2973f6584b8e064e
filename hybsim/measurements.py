"""
measurements.py — Observable accumulators fed after every unit of work
======================================================================

All estimators read the current segments (LocalConfig) and the inverse
hybridization matrices M = F^{-1} (HybConfig). Signed observables are
accumulated as O * sign and reported as <O sign> / <sign>.
"""

import logging

import numpy as np
from scipy.special import eval_legendre

from .hybridization import HybConfig
from .local_config import LocalConfig
from .params import ConfigurationError, Parameters
from .segments import occupation

logger = logging.getLogger("hybsim.measurements")


class Accumulator:
    """Running sum, sum of squares and count of a (possibly array) observable."""

    def __init__(self, shape=(), dtype=float):
        self.sum = np.zeros(shape, dtype=dtype)
        self.sum2 = np.zeros(shape, dtype=float)
        self.count = 0

    def add(self, value) -> None:
        value = np.asarray(value)
        self.sum += value
        self.sum2 += np.abs(value) ** 2
        self.count += 1

    def mean(self) -> np.ndarray:
        return self.sum / self.count

    def error(self) -> np.ndarray:
        if self.count < 2:
            return np.zeros(self.sum.shape)
        var = self.sum2 / self.count - np.abs(self.mean()) ** 2
        return np.sqrt(np.clip(var, 0.0, None) / (self.count - 1))

    def merge(self, other: "Accumulator") -> None:
        if self.sum.shape != other.sum.shape:
            raise ValueError(f"cannot merge shapes {self.sum.shape} and {other.sum.shape}")
        self.sum = self.sum + other.sum
        self.sum2 = self.sum2 + other.sum2
        self.count += other.count


def _positive(parms: Parameters, name: str, minimum: int = 1) -> int:
    value = parms[name]
    if value < minimum:
        raise ConfigurationError(f"parameter {name} must be at least {minimum}, got {value}")
    return value


class MeasurementBank:
    """Accumulators for every enabled measurement channel."""

    def __init__(self, parms: Parameters, beta: float, u_matrix):
        self.beta = float(beta)
        self.n_orbitals = parms["N_ORBITALS"]
        self.u_matrix = np.asarray(u_matrix, dtype=float)
        self.n_tau = parms["N_TAU"]
        self.n_hist = _positive(parms, "N_HISTOGRAM_ORDERS")
        self.accumulators = {}
        self.signed = set()
        n = self.n_orbitals

        self._add("Sign", (), signed=False)
        self._add("order_histogram", (n, self.n_hist), signed=False)
        self._add("n", (n,))
        self.measure_time = parms["MEASURE_time"]
        if self.measure_time:
            self._add("G_tau", (n, self.n_tau + 1))
        self.measure_freq = parms["MEASURE_freq"]
        if self.measure_freq:
            self.n_matsubara = _positive(parms, "N_MATSUBARA")
            self._add("G_omega", (n, self.n_matsubara), complex)
        self.measure_legendre = parms["MEASURE_legendre"]
        if self.measure_legendre:
            self.n_legendre = _positive(parms, "N_LEGENDRE")
            self._add("G_legendre", (n, self.n_legendre))
        self.measure_nn = parms["MEASURE_nn"]
        if self.measure_nn:
            self._add("nn", (n, n))
        self.measure_nnt = parms["MEASURE_nnt"]
        if self.measure_nnt:
            self.n_nn = _positive(parms, "N_nn")
            self._add("nnt", (n, n, self.n_nn + 1))
        self.measure_nnw = parms["MEASURE_nnw"]
        if self.measure_nnw:
            self.n_bosonic = _positive(parms, "N_W")
            self._add("nnw", (n, n, self.n_bosonic), complex)
        self.measure_g2w = parms["MEASURE_g2w"]
        self.measure_h2w = parms["MEASURE_h2w"]
        if self.measure_g2w or self.measure_h2w:
            self.n_w2 = _positive(parms, "N_w2", 2)
            self.n_bosonic = _positive(parms, "N_W")
            shape = (n, n, self.n_w2, self.n_w2, self.n_bosonic)
            if self.measure_g2w:
                self._add("g2w", shape, complex)
            if self.measure_h2w:
                self._add("h2w", shape, complex)
        self.measure_sectors = parms["MEASURE_sector_statistics"]
        if self.measure_sectors:
            self._add("sector_statistics", (2 ** n,))

    def _add(self, name: str, shape, dtype=float, signed: bool = True) -> None:
        self.accumulators[name] = Accumulator(shape, dtype)
        if signed:
            self.signed.add(name)

    # --------------------------------------------------------
    # Measurement
    # --------------------------------------------------------
    def measure(self, local: LocalConfig, hyb: HybConfig, sign: float) -> None:
        acc = self.accumulators
        beta = self.beta
        acc["Sign"].add(sign)

        hist = np.zeros((self.n_orbitals, self.n_hist))
        for o in range(self.n_orbitals):
            hist[o, min(local.order(o), self.n_hist - 1)] = 1.0
        acc["order_histogram"].add(hist)

        lengths = np.array([local.occupied_length(o) for o in range(self.n_orbitals)])
        acc["n"].add(sign * lengths / beta)

        if self.measure_time:
            acc["G_tau"].add(sign * self._green_tau(hyb))
        if self.measure_freq:
            acc["G_omega"].add(sign * self._green_omega(hyb))
        if self.measure_legendre:
            acc["G_legendre"].add(sign * self._green_legendre(hyb))
        if self.measure_nn:
            acc["nn"].add(sign * self._density_density(local, lengths))
        if self.measure_nnt:
            acc["nnt"].add(sign * self._density_density_tau(local))
        if self.measure_nnw:
            acc["nnw"].add(sign * self._density_density_omega(local))
        if self.measure_g2w or self.measure_h2w:
            self._two_particle(local, hyb, sign)
        if self.measure_sectors:
            acc["sector_statistics"].add(sign * self._sector_statistics(local))

    def _operator_times(self, hyb: HybConfig, orbital: int):
        m = hyb.matrices[orbital]
        return np.asarray(m.annihilators), np.asarray(m.creators), m.inverse

    def _wrapped_differences(self, e: np.ndarray, s: np.ndarray):
        """tau = e_i - s_j mapped into [0, beta) and the antiperiodic sign."""
        tau = e[:, None] - s[None, :]
        negative = tau < 0
        return np.where(negative, tau + self.beta, tau), np.where(negative, -1.0, 1.0)

    def _green_tau(self, hyb: HybConfig) -> np.ndarray:
        g = np.zeros((self.n_orbitals, self.n_tau + 1))
        dtau = self.beta / self.n_tau
        for o in range(self.n_orbitals):
            e, s, m = self._operator_times(hyb, o)
            if e.size == 0:
                continue
            tau, sgn = self._wrapped_differences(e, s)
            idx = np.rint(tau / dtau).astype(int)
            np.add.at(g[o], idx.ravel(), (-sgn * m.T).ravel())
        g /= self.beta * dtau
        # the first and last bins are half as wide
        g[:, 0] *= 2.0
        g[:, -1] *= 2.0
        return g

    def _green_omega(self, hyb: HybConfig) -> np.ndarray:
        g = np.zeros((self.n_orbitals, self.n_matsubara), dtype=complex)
        wn = (2 * np.arange(self.n_matsubara) + 1) * np.pi / self.beta
        for o in range(self.n_orbitals):
            e, s, m = self._operator_times(hyb, o)
            if e.size == 0:
                continue
            pe = np.exp(1j * np.outer(wn, e))
            ps = np.exp(-1j * np.outer(wn, s))
            g[o] = -np.einsum("wi,ji,wj->w", pe, m, ps) / self.beta
        return g

    def _green_legendre(self, hyb: HybConfig) -> np.ndarray:
        g = np.zeros((self.n_orbitals, self.n_legendre))
        ls = np.arange(self.n_legendre)
        norm = np.sqrt(2 * ls + 1) / self.beta
        for o in range(self.n_orbitals):
            e, s, m = self._operator_times(hyb, o)
            if e.size == 0:
                continue
            tau, sgn = self._wrapped_differences(e, s)
            x = 2.0 * tau / self.beta - 1.0
            p = eval_legendre(ls[:, None, None], x[None, :, :])
            g[o] = -norm * np.einsum("lij,ij->l", p, sgn * m.T)
        return g

    def _density_density(self, local: LocalConfig, lengths: np.ndarray) -> np.ndarray:
        nn = np.diag(lengths / self.beta)
        for i in range(self.n_orbitals):
            for j in range(i + 1, self.n_orbitals):
                nn[i, j] = nn[j, i] = local.overlap(i, j) / self.beta
        return nn

    def _occupations(self, local: LocalConfig, times: np.ndarray) -> np.ndarray:
        return np.array([
            occupation(local.segments[o], local.full[o], times, self.beta)
            for o in range(self.n_orbitals)], dtype=float)

    def _density_density_tau(self, local: LocalConfig) -> np.ndarray:
        """<n_i(tau) n_j(0)> on N_nn+1 points, averaged over translations."""
        grid = np.arange(self.n_nn) * self.beta / self.n_nn
        occ = self._occupations(local, grid)
        out = np.zeros((self.n_orbitals, self.n_orbitals, self.n_nn + 1))
        for shift in range(self.n_nn + 1):
            shifted = np.roll(occ, -(shift % self.n_nn), axis=1)
            out[:, :, shift] = shifted @ occ.T / self.n_nn
        return out

    def _density_omega(self, local: LocalConfig) -> np.ndarray:
        wb = 2 * np.pi * np.arange(self.n_bosonic) / self.beta
        dens = np.zeros((self.n_orbitals, self.n_bosonic), dtype=complex)
        for o in range(self.n_orbitals):
            dens[o, 0] = local.occupied_length(o)
            for seg in local.segments[o]:
                dens[o, 1:] += (np.exp(1j * wb[1:] * seg.t_end)
                                - np.exp(1j * wb[1:] * seg.t_start)) / (1j * wb[1:])
        return dens

    def _density_density_omega(self, local: LocalConfig) -> np.ndarray:
        dens = self._density_omega(local)
        return dens[:, None, :] * np.conj(dens[None, :, :]) / self.beta

    def _frequency_matrices(self, local: LocalConfig, hyb: HybConfig, improved: bool):
        """M(w, w') = sum_ij exp(i w e_i) M_ji exp(-i w' s_j) on the auxiliary
        fermionic grid; with ``improved`` the annihilator side is weighted by
        the interaction with the other orbitals' densities."""
        half = self.n_w2 // 2
        n_aux = self.n_w2 + self.n_bosonic - 1
        w_aux = (2 * (np.arange(n_aux) - half) + 1) * np.pi / self.beta
        plain = np.zeros((self.n_orbitals, n_aux, n_aux), dtype=complex)
        weighted = np.zeros_like(plain) if improved else None
        for o in range(self.n_orbitals):
            e, s, m = self._operator_times(hyb, o)
            if e.size == 0:
                continue
            a = np.exp(1j * np.outer(w_aux, e))
            b = np.exp(-1j * np.outer(w_aux, s))
            plain[o] = a @ m.T @ b.T
            if improved:
                occ = self._occupations(local, e)
                ntilde = self.u_matrix[o] @ occ
                weighted[o] = (a * ntilde[None, :]) @ m.T @ b.T
        return plain, weighted

    def _two_particle(self, local: LocalConfig, hyb: HybConfig, sign: float) -> None:
        plain, weighted = self._frequency_matrices(local, hyb, self.measure_h2w)
        i1 = np.arange(self.n_w2)[:, None, None]
        i2 = np.arange(self.n_w2)[None, :, None]
        mb = np.arange(self.n_bosonic)[None, None, :]
        shape = (self.n_orbitals, self.n_orbitals, self.n_w2, self.n_w2, self.n_bosonic)
        g2 = np.zeros(shape, dtype=complex)
        h2 = np.zeros(shape, dtype=complex) if self.measure_h2w else None
        for a in range(self.n_orbitals):
            for b in range(self.n_orbitals):
                right = plain[b][i2, i2 + mb]
                g2[a, b] = plain[a][i1 + mb, i1] * right
                if h2 is not None:
                    h2[a, b] = weighted[a][i1 + mb, i1] * right
                if a == b:
                    exchange = plain[a][i2, i1]
                    g2[a, b] -= plain[a][i1 + mb, i2 + mb] * exchange
                    if h2 is not None:
                        h2[a, b] -= weighted[a][i1 + mb, i2 + mb] * exchange
        if self.measure_g2w:
            self.accumulators["g2w"].add(sign * g2 / self.beta)
        if self.measure_h2w:
            self.accumulators["h2w"].add(sign * h2 / self.beta)

    def _sector_statistics(self, local: LocalConfig) -> np.ndarray:
        """Fraction of imaginary time spent in each occupation state."""
        bounds = {0.0, self.beta}
        for segments in local.segments:
            for seg in segments:
                bounds.add(seg.t_start)
                bounds.add(seg.t_end)
        bounds = np.array(sorted(bounds))
        widths = np.diff(bounds)
        mids = 0.5 * (bounds[:-1] + bounds[1:])
        occ = self._occupations(local, mids).astype(np.int64)
        states = (occ << np.arange(self.n_orbitals)[:, None]).sum(axis=0)
        return np.bincount(states, weights=widths, minlength=2 ** self.n_orbitals) / self.beta

    # --------------------------------------------------------
    # Evaluation
    # --------------------------------------------------------
    def merge(self, other: "MeasurementBank") -> None:
        for name, acc in self.accumulators.items():
            acc.merge(other.accumulators[name])

    @property
    def count(self) -> int:
        return self.accumulators["Sign"].count

    def evaluate(self) -> dict:
        """Means and naive errors; signed observables divided by <sign>."""
        if self.count == 0:
            return {}
        sign = float(self.accumulators["Sign"].mean())
        out = {}
        for name, acc in self.accumulators.items():
            if name in self.signed:
                out[name] = acc.mean() / sign
                out[f"{name}_error"] = acc.error() / abs(sign)
            else:
                out[name] = acc.mean()
                out[f"{name}_error"] = acc.error()
        return out
