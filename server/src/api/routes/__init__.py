from . import (
	health,
	pods,
	stats,
)


__all__ = [
	"health",
	"pods",
	"stats",
]
