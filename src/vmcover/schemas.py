from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import List, Literal, TypedDict

    ScriptJson = TypedDict('ScriptJson', {
        'type': Literal['@Script'],
        'fixedId': bool,
        'id': str,
        'uri': str,
        '_kind': str,
    })

    class ScriptCoverage(TypedDict):
        source: str
        script: ScriptJson
        hits: List[int]     # flattened (line, count) pairs

    class CodeCoverage(TypedDict):
        type: Literal['CodeCoverage']
        coverage: List[ScriptCoverage]
