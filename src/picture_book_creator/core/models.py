"""数据模型定义"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..utils.config import ImageEngine, Language, TaskType


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """带角色标签的文本块"""

    role: Role
    content: str


class GenerationRequest(BaseModel):
    """文本生成请求

    max_tokens 必须为正数，超过模型上限的部分在发送前截断。
    """

    task_type: TaskType = Field(default=TaskType.FAST_PROCESSING, description="任务类型")
    messages: list[Message] = Field(..., min_length=1, description="有序消息列表")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, description="采样温度")
    max_tokens: Optional[int] = Field(default=None, ge=1, description="最大生成token数")


class AccountTier(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class AccountState(BaseModel):
    """单个账号的调度状态，只由账号调度器修改"""

    id: str
    tier: AccountTier
    call_count: int = 0
    last_call_time: Optional[float] = None
    is_rate_limited: bool = False
    rate_limit_until: float = 0.0
    window_start: float = 0.0


class ImageOptions(BaseModel):
    """图像生成参数"""

    aspect_ratio: str = Field(default="3:4", description="画面比例")
    guidance_scale: float = Field(default=3.5, description="提示词引导强度")
    img_count: int = Field(default=1, ge=1, le=4, description="生成数量")
    model: str = Field(default="pro", description="模型档位")


class ImageJob(BaseModel):
    """一次图像生成任务"""

    prompt: str
    reference_image_url: Optional[str] = None
    options: ImageOptions = Field(default_factory=ImageOptions)


class ImageStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class ImageResult(BaseModel):
    """归一化后的图像生成结果"""

    status: ImageStatus
    image_url: Optional[str] = None
    task_id: Optional[str] = None
    message: str = ""
    attempts: int = 1
    final_prompt: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict, description="服务端原始响应")

    @property
    def is_terminal(self) -> bool:
        return self.status != ImageStatus.PENDING


class Page(BaseModel):
    """故事单页"""

    number: int = Field(..., ge=1, description="页码，从1开始连续")
    text: str = Field(..., description="故事文本")
    image_prompt: str = Field(default="", description="英文插画描述")


class StoryPayload(BaseModel):
    """解析后的模型输出"""

    title: str
    pages: list[Page] = Field(..., min_length=1)
    educational_value: str = ""
    educational_theme: str = ""
    target_age: str = ""
    teaching_points: list[str] = Field(default_factory=list)
    discussion_questions: list[str] = Field(default_factory=list)


class StoryType(str, Enum):
    ADVENTURE = "adventure"
    GROWTH = "growth"
    FRIENDSHIP = "friendship"
    LIFE_SKILLS = "life-skills"


class ContentMode(str, Enum):
    CUSTOM = "custom"
    SELECTED = "selected"
    RANDOM = "random"


class CharacterProfile(BaseModel):
    """主角设定"""

    name: str = Field(default="", description="角色名字")
    age: int = Field(default=6, ge=2, le=12, description="年龄")
    gender: str = Field(default="any", description="boy / girl / any")
    identity: str = Field(default="human", description="human / animal")
    description: str = Field(default="", description="用户补充的外貌描述")
    personality: str = Field(default="", description="性格特点")


class StorySettings(BaseModel):
    """故事设定"""

    story_type: StoryType = StoryType.GROWTH
    setting: str = Field(default="", description="故事背景")
    page_count: int = Field(default=6, ge=1, le=12, description="页数")
    language: Language = Language.CHINESE


class ContentSettings(BaseModel):
    """教学内容设定"""

    mode: ContentMode = ContentMode.RANDOM
    educational_topic: str = Field(default="学会分享与合作", description="教学主题")
    educational_goals: str = Field(default="", description="教育目标")


class IllustratedPage(Page):
    """带插画的页面"""

    image_url: Optional[str] = None
    final_prompt: Optional[str] = None
    image_error: Optional[str] = None
    image_error_kind: Optional[str] = None


class PictureBook(BaseModel):
    """绘本成品"""

    title: str = Field(..., description="绘本标题")
    pages: list[IllustratedPage] = Field(default_factory=list, description="页面列表")
    educational_value: str = ""
    educational_theme: str = ""
    target_age: str = ""
    teaching_points: list[str] = Field(default_factory=list)
    discussion_questions: list[str] = Field(default_factory=list)
    language: Language = Language.CHINESE
    story_model: str = ""
    image_engine: ImageEngine = ImageEngine.LIBLIB
    character_description: str = ""
    master_image_url: Optional[str] = None

    def _get_labels(self) -> dict:
        """获取对应语言的标签"""
        labels = {
            Language.ENGLISH: {
                "theme": "Theme",
                "age": "Target Age",
                "page": "Page",
                "illustration": "Illustration",
                "missing": "Illustration unavailable",
                "value": "Educational Value",
                "points": "Teaching Points",
                "questions": "Discussion Questions",
            },
            Language.CHINESE: {
                "theme": "教学主题",
                "age": "适合年龄",
                "page": "第{}页",
                "illustration": "插图",
                "missing": "插图生成失败",
                "value": "教育意义",
                "points": "教学要点",
                "questions": "讨论问题",
            },
        }
        return labels.get(self.language, labels[Language.ENGLISH])

    def to_markdown(self) -> str:
        """导出为Markdown格式"""
        labels = self._get_labels()

        lines = [f"# {self.title}", ""]
        if self.educational_theme:
            lines.append(f"**{labels['theme']}**: {self.educational_theme}")
        if self.target_age:
            lines.append(f"**{labels['age']}**: {self.target_age}")
        lines.append("")

        for page in self.pages:
            if self.language == Language.ENGLISH:
                page_header = f"## {labels['page']} {page.number}"
            else:
                page_header = f"## {labels['page'].format(page.number)}"

            lines.extend([page_header, ""])
            if page.image_url:
                lines.extend([f"![{labels['illustration']} {page.number}]({page.image_url})", ""])
            elif page.image_error:
                lines.extend([f"*{labels['missing']}: {page.image_error}*", ""])
            lines.extend([page.text, ""])

        if self.educational_value:
            lines.extend([f"## {labels['value']}", "", self.educational_value, ""])
        if self.teaching_points:
            lines.append(f"**{labels['points']}:**")
            for point in self.teaching_points:
                lines.append(f"- {point}")
            lines.append("")
        if self.discussion_questions:
            lines.append(f"**{labels['questions']}:**")
            for question in self.discussion_questions:
                lines.append(f"- {question}")
            lines.append("")

        return "\n".join(lines)
