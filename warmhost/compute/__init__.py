from warmhost.compute.launcher import ComputeLauncher, ECSLauncher, is_stopped

__all__ = ["ComputeLauncher", "ECSLauncher", "is_stopped"]
