from prompts.manager import (
    get_prompt_template, get_template_library, get_global_constraints,
    get_sequential_base, force_reload_prompts
)
