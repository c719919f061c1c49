"""2D / 3D value types used for pixel and world coordinates."""

import math
from typing import NamedTuple

import numpy as np


class Vec2F(NamedTuple):
    x: float
    y: float

    def __add__(self, other):
        return Vec2F(self.x + other[0], self.y + other[1])

    def __sub__(self, other):
        return Vec2F(self.x - other[0], self.y - other[1])

    def __mul__(self, s):
        return Vec2F(self.x * s, self.y * s)

    __rmul__ = __mul__

    def __truediv__(self, s):
        return Vec2F(self.x / s, self.y / s)

    def __neg__(self):
        return Vec2F(-self.x, -self.y)

    def dot(self, other) -> float:
        return self.x * other[0] + self.y * other[1]

    def length(self) -> float:
        return math.hypot(self.x, self.y)

    def unit(self) -> "Vec2F":
        n = self.length()
        if n == 0:
            return Vec2F(0.0, 0.0)
        return Vec2F(self.x / n, self.y / n)

    def distance_to(self, other) -> float:
        return math.hypot(self.x - other[0], self.y - other[1])

    def angle(self) -> float:
        """Direction in radians, measured from the x axis."""
        return math.atan2(self.y, self.x)

    def to_array(self) -> np.ndarray:
        return np.array([self.x, self.y], dtype=float)

    @staticmethod
    def from_array(a) -> "Vec2F":
        a = np.asarray(a, dtype=float).reshape(-1)
        return Vec2F(float(a[0]), float(a[1]))


class Vec3F(NamedTuple):
    x: float
    y: float
    z: float

    def __add__(self, other):
        return Vec3F(self.x + other[0], self.y + other[1], self.z + other[2])

    def __sub__(self, other):
        return Vec3F(self.x - other[0], self.y - other[1], self.z - other[2])

    def __mul__(self, s):
        return Vec3F(self.x * s, self.y * s, self.z * s)

    __rmul__ = __mul__

    def __truediv__(self, s):
        return Vec3F(self.x / s, self.y / s, self.z / s)

    def __neg__(self):
        return Vec3F(-self.x, -self.y, -self.z)

    def dot(self, other) -> float:
        return self.x * other[0] + self.y * other[1] + self.z * other[2]

    def length(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)

    def unit(self) -> "Vec3F":
        n = self.length()
        if n == 0:
            return Vec3F(0.0, 0.0, 0.0)
        return self / n

    def distance_to(self, other) -> float:
        return (self - other).length()

    def xy(self) -> Vec2F:
        return Vec2F(self.x, self.y)

    def to_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)

    @staticmethod
    def from_array(a) -> "Vec3F":
        a = np.asarray(a, dtype=float).reshape(-1)
        return Vec3F(float(a[0]), float(a[1]), float(a[2]))
