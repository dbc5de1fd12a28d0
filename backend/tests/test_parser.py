import pytest

from backend.ai_service.parser import (
    DEFAULT_ANALYSIS,
    DEFAULT_DESCRIPTION,
    ParsedPoetry,
    parse_poetry_result,
)

WELL_FORMED = """**图片描述：**
湖面上倒映着远山与晚霞。

**诗歌：**
暮色湖光
远山含黛映湖光
晚霞如锦落斜阳
归舟一叶随波去

**分析：**
暖色与冷色交织，构图开阔。"""


def test_parse_well_formed():
    result = parse_poetry_result(WELL_FORMED)
    assert result.description == "湖面上倒映着远山与晚霞。"
    assert result.title == "暮色湖光"
    assert result.poetry == ["远山含黛映湖光", "晚霞如锦落斜阳", "归舟一叶随波去"]
    assert result.analysis == "暖色与冷色交织，构图开阔。"


def test_parse_minimal_sections():
    result = parse_poetry_result("**图片描述：**D\n**诗歌：**T\nL1\nL2\n**分析：**A")
    assert result.description == "D"
    assert result.title == "T"
    assert result.poetry == ["L1", "L2"]
    assert result.analysis == "A"


@pytest.mark.parametrize("text", [
    "",
    "   ",
    "\n\n\n",
    "**诗歌：**",
    "**分析：****诗歌：****图片描述：**",
    "诗歌：诗歌：诗歌：",
    "**图片描述：" * 50,
    "《》",
])
def test_parse_never_raises(text):
    result = parse_poetry_result(text)
    assert isinstance(result, ParsedPoetry)
    assert isinstance(result.poetry, list)
    assert result.description
    assert result.analysis


def test_parse_none_input():
    result = parse_poetry_result(None)
    assert result.poetry == []
    assert result.title is None


def test_no_markers_uses_whole_text():
    result = parse_poetry_result("春风又绿江南岸\n\n明月何时照我还\n")
    assert result.title is None
    assert result.poetry == ["春风又绿江南岸", "明月何时照我还"]
    assert result.description == DEFAULT_DESCRIPTION
    assert result.analysis == DEFAULT_ANALYSIS


def test_missing_description_and_analysis_use_defaults():
    result = parse_poetry_result("**诗歌：**\n静夜\n床前明月光\n疑是地上霜")
    assert result.description == DEFAULT_DESCRIPTION
    assert result.analysis == DEFAULT_ANALYSIS
    assert result.title == "静夜"


def test_ascii_colon_markers():
    result = parse_poetry_result("**图片描述:**花\n**诗歌:**\n花语\n一朵花开\n**分析:**明亮")
    assert result.description == "花"
    assert result.title == "花语"
    assert result.poetry == ["一朵花开"]
    assert result.analysis == "明亮"


def test_explicit_title_line_wins():
    text = "**诗歌：**\n山间清晨的雾气慢慢散开了\n标题：晨雾\n鸟鸣唤醒了沉睡的树林"
    result = parse_poetry_result(text)
    assert result.title == "晨雾"
    assert result.poetry == ["山间清晨的雾气慢慢散开了", "鸟鸣唤醒了沉睡的树林"]


def test_book_title_marks():
    result = parse_poetry_result("**诗歌：**\n《秋思》\n枯藤老树昏鸦\n小桥流水人家")
    assert result.title == "秋思"
    assert result.poetry == ["枯藤老树昏鸦", "小桥流水人家"]


def test_long_first_line_is_not_a_title():
    first = "这是一行非常非常长的诗句，它远远超过了标题应有的长度，所以不应被当作标题"
    result = parse_poetry_result(f"**诗歌：**\n{first}\n第二行")
    assert result.title is None
    assert result.poetry == [first, "第二行"]


def test_single_line_poem_has_no_title():
    result = parse_poetry_result("**诗歌：**\n孤帆远影碧空尽")
    assert result.title is None
    assert result.poetry == ["孤帆远影碧空尽"]


def test_sections_out_of_order():
    result = parse_poetry_result("**分析：**A\n**诗歌：**\nT\nL1\nL2\n**图片描述：**D")
    assert result.description == "D"
    assert result.analysis == "A"
    assert result.title == "T"
    assert result.poetry == ["L1", "L2"]


def test_bare_marker_inside_prose_is_ignored():
    text = "**图片描述：**画中人正在读诗歌：一本旧书\n**诗歌：**\n书香\n字里行间\n**分析：**安静"
    result = parse_poetry_result(text)
    assert result.description == "画中人正在读诗歌：一本旧书"
    assert result.title == "书香"
