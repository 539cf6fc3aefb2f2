import typing

UserId = typing.NewType("UserId", str)
ModuleId = typing.NewType("ModuleId", str)
LessonId = typing.NewType("LessonId", str)
IsoTimestamp = typing.NewType("IsoTimestamp", str)
CacheKey = typing.NewType("CacheKey", str)
ClientEventId = typing.NewType("ClientEventId", str)

AuthTokenProvider = typing.Callable[[], typing.Optional[str]]
