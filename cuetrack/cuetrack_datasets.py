"""CueTrack Synthetic Data — reproducible table scenarios with ground truth
=====================================================================

Generates per-frame detection batches for rolling balls on a pool table,
with measurement noise, missed detections, low-confidence clutter and
occasional duplicate detections of the same ball.

Each scenario produces a list of ``TableFrame``:
    - detections: List[Detection] as an external detector would report them
    - ground_truth: (n_balls, 3) true centres
    - ball_ids: ground-truth id per row of ``ground_truth``
    - metadata: scenario name, frame index
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from .cuetrack_collaborators import Detector
from .cuetrack_config import POOL_BALL_DIAMETER
from .cuetrack_models import Detection, DetectionFailed


@dataclass
class TableFrame:
    """One captured frame with detections and truth."""
    timestamp: float
    detections: List[Detection]
    ground_truth: np.ndarray
    ball_ids: List[str] = field(default_factory=list)
    metadata: Dict = field(default_factory=dict)

    @property
    def n_detections(self) -> int:
        return len(self.detections)


class SyntheticTableGenerator:
    """Reproducible billiard scenarios for testing and benchmarking.

    Usage::

        gen = SyntheticTableGenerator(seed=7)
        for frame in gen.rolling_balls(n_balls=4, n_frames=120):
            tracker.update(frame.detections, frame.timestamp)
    """

    def __init__(self, seed: int = 42, noise_std: float = 0.003,
                 p_detection: float = 1.0, clutter_rate: float = 0.0,
                 duplicate_rate: float = 0.0,
                 table_size=(2.54, 1.27), ball_diameter: float = POOL_BALL_DIAMETER,
                 rolling_friction: float = 0.2):
        self.rng = np.random.RandomState(seed)
        self.noise_std = noise_std
        self.p_detection = p_detection
        self.clutter_rate = clutter_rate
        self.duplicate_rate = duplicate_rate
        self.table_size = np.array(table_size, dtype=float)
        self.ball_diameter = ball_diameter
        self.rolling_friction = rolling_friction    # Deceleration [m/s²]

    @property
    def ball_radius(self) -> float:
        return self.ball_diameter / 2

    # ---- physics ----

    def _step(self, pos: np.ndarray, vel: np.ndarray, dt: float):
        """Advance one ball with rolling friction and cushion reflection."""
        speed = np.linalg.norm(vel[:2])
        if speed > 0:
            new_speed = max(0.0, speed - self.rolling_friction * dt)
            vel = vel * (new_speed / speed)
        pos = pos + vel * dt
        lo = self.ball_radius
        for axis in range(2):
            hi = self.table_size[axis] - self.ball_radius
            if pos[axis] < lo:
                pos[axis] = 2 * lo - pos[axis]
                vel[axis] = -vel[axis]
            elif pos[axis] > hi:
                pos[axis] = 2 * hi - pos[axis]
                vel[axis] = -vel[axis]
        return pos, vel

    # ---- observation model ----

    def _observe(self, truths: Sequence[np.ndarray], tags: Sequence[Optional[str]],
                 t: float, hidden: Iterable[int] = ()) -> List[Detection]:
        hidden = set(hidden)
        dets = []
        extent = np.array([self.ball_diameter, self.ball_diameter])
        for i, (pos, tag) in enumerate(zip(truths, tags)):
            if i in hidden or self.rng.rand() >= self.p_detection:
                continue
            noisy = pos + self.rng.randn(3) * self.noise_std
            noisy[2] = pos[2]
            conf = float(np.clip(0.9 + self.rng.randn() * 0.03, 0.5, 1.0))
            dets.append(Detection(noisy, conf, t, appearance_tag=tag,
                                  appearance_confidence=conf if tag else None,
                                  extent=extent * (1 + self.rng.randn() * 0.03)))
            if self.rng.rand() < self.duplicate_rate:
                twin = pos + self.rng.randn(3) * self.noise_std * 0.5
                twin[2] = pos[2]
                dets.append(Detection(twin, conf * 0.8, t, appearance_tag=tag,
                                      extent=extent))
        for _ in range(self.rng.poisson(self.clutter_rate)):
            spot = np.array([self.rng.rand() * self.table_size[0],
                             self.rng.rand() * self.table_size[1],
                             self.ball_radius])
            dets.append(Detection(spot, float(self.rng.uniform(0.05, 0.35)), t,
                                  extent=extent * self.rng.uniform(0.3, 2.0)))
        return dets

    def _random_layout(self, n_balls: int) -> List[np.ndarray]:
        """Non-overlapping rest positions."""
        positions = []
        while len(positions) < n_balls:
            cand = np.array([
                self.rng.uniform(0.1, self.table_size[0] - 0.1),
                self.rng.uniform(0.1, self.table_size[1] - 0.1),
                self.ball_radius,
            ])
            if all(np.linalg.norm(cand - p) > 3 * self.ball_diameter for p in positions):
                positions.append(cand)
        return positions

    # ---- scenarios ----

    def rolling_balls(self, n_balls: int = 3, n_frames: int = 60, dt: float = 1 / 30,
                      max_speed: float = 1.5, tagged: bool = True) -> List[TableFrame]:
        """Independent balls rolling with random initial velocities."""
        positions = self._random_layout(n_balls)
        velocities = []
        for _ in range(n_balls):
            heading = self.rng.uniform(0, 2 * np.pi)
            speed = self.rng.uniform(0.2, max_speed)
            velocities.append(np.array([np.cos(heading), np.sin(heading), 0.0]) * speed)
        tags = [str(i + 1) if tagged else None for i in range(n_balls)]
        return self._simulate(positions, velocities, tags, n_frames, dt, "rolling_balls")

    def touching_pair(self, n_frames: int = 30, dt: float = 1 / 30,
                      gap: float = 0.0) -> List[TableFrame]:
        """Two balls frozen together (centres one diameter + gap apart), at rest."""
        centre = np.array([self.table_size[0] / 2, self.table_size[1] / 2, self.ball_radius])
        offset = np.array([(self.ball_diameter + gap) / 2, 0.0, 0.0])
        positions = [centre - offset, centre + offset]
        velocities = [np.zeros(3), np.zeros(3)]
        return self._simulate(positions, velocities, ["9", "10"], n_frames, dt, "touching_pair")

    def occlusion(self, n_frames: int = 40, dt: float = 1 / 30, hidden_from: int = 10,
                  hidden_frames: int = 4, speed: float = 0.8) -> List[TableFrame]:
        """One ball rolling across the table, unseen for ``hidden_frames`` frames."""
        positions = [np.array([0.3, self.table_size[1] / 2, self.ball_radius])]
        velocities = [np.array([speed, 0.0, 0.0])]
        hidden = {k: [0] for k in range(hidden_from, hidden_from + hidden_frames)}
        return self._simulate(positions, velocities, ["cue"], n_frames, dt, "occlusion",
                              hidden=hidden)

    def break_shot(self, n_frames: int = 60, dt: float = 1 / 30,
                   break_frame: int = 10) -> List[TableFrame]:
        """A triangle rack sits still, then scatters outward."""
        apex = np.array([self.table_size[0] * 0.7, self.table_size[1] / 2, self.ball_radius])
        positions = []
        d = self.ball_diameter * 1.01
        for row in range(3):
            for k in range(row + 1):
                positions.append(apex + np.array([row * d * np.sqrt(3) / 2,
                                                  (k - row / 2) * d, 0.0]))
        rack_centre = np.mean(positions, axis=0)
        scatter = []
        for pos in positions:
            direction = pos - rack_centre + self.rng.randn(3) * 0.005
            direction[2] = 0.0
            norm = np.linalg.norm(direction)
            scatter.append(direction / norm * self.rng.uniform(0.5, 1.5) if norm > 0
                           else np.zeros(3))
        velocities = [np.zeros(3) for _ in positions]
        tags = [str(i + 1) for i in range(len(positions))]
        return self._simulate(positions, velocities, tags, n_frames, dt, "break_shot",
                              kicks={break_frame: scatter})

    def _simulate(self, positions, velocities, tags, n_frames, dt, name,
                  hidden=None, kicks=None) -> List[TableFrame]:
        hidden = hidden or {}
        kicks = kicks or {}
        positions = [p.astype(float).copy() for p in positions]
        velocities = [v.astype(float).copy() for v in velocities]
        frames = []
        for k in range(n_frames):
            t = k * dt
            if k in kicks:
                velocities = [v + kick for v, kick in zip(velocities, kicks[k])]
            if k > 0:
                for i in range(len(positions)):
                    positions[i], velocities[i] = self._step(positions[i], velocities[i], dt)
            frames.append(TableFrame(
                timestamp=t,
                detections=self._observe(positions, tags, t, hidden.get(k, ())),
                ground_truth=np.array(positions),
                ball_ids=[tag or f"ball{i}" for i, tag in enumerate(tags)],
                metadata={"scenario": name, "frame": k},
            ))
        return frames


class MockDetector(Detector):
    """Replays pre-generated frames; frame indices in ``fail_on`` raise DetectionFailed."""

    def __init__(self, frames: Sequence[TableFrame], fail_on: Iterable[int] = ()):
        self.frames = list(frames)
        self.fail_on = set(fail_on)
        self.calls = 0

    def detect(self, frame: int) -> List[Detection]:
        self.calls += 1
        if frame in self.fail_on:
            raise DetectionFailed(f"frame {frame} unreadable")
        return list(self.frames[frame].detections)
