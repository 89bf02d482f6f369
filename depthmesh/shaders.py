"""GLSL 4.30 compute shaders for the depth and mesh kernels.

Work-group sizes here must match WORKGROUP_2D / WORKGROUP_1D in dispatch.py.
"""

DEPTH_ESTIMATION_COMPUTE_SHADER = """
#version 430
layout(local_size_x = 16, local_size_y = 16, local_size_z = 1) in;

uniform sampler2D input_tex;
layout(r32f, binding = 1) uniform writeonly image2D depth_out;
uniform float depth_scale;
uniform float noise_amplitude;

float luma(vec3 c) {
    return 0.299 * c.r + 0.587 * c.g + 0.114 * c.b;
}

void main() {
    ivec2 size = textureSize(input_tex, 0);
    ivec2 gid = ivec2(gl_GlobalInvocationID.xy);

    // Padding threads of partial work-groups
    if (gid.x >= size.x || gid.y >= size.y) {
        return;
    }

    vec3 center = texelFetch(input_tex, gid, 0).rgb;
    float center_lum = luma(center);

    float lum_variance = 0.0;
    for (int dy = -1; dy <= 1; dy++) {
        for (int dx = -1; dx <= 1; dx++) {
            if (dx == 0 && dy == 0) continue;
            ivec2 p = clamp(gid + ivec2(dx, dy), ivec2(0, 0), size - ivec2(1, 1));
            lum_variance += abs(luma(texelFetch(input_tex, p, 0).rgb) - center_lum);
        }
    }
    lum_variance /= 8.0;

    float color_depth = center.r * 0.6 + center.g * 0.3 + center.b * 0.1;

    vec2 uv = vec2(gid) / vec2(size);
    float position_depth = 1.0 - length(uv - vec2(0.5, 0.5));

    float edge_strength = lum_variance * 3.0;
    float depth = 0.5 * (1.0 - clamp(edge_strength * depth_scale, 0.0, 1.0))
                + 0.3 * color_depth
                + 0.2 * position_depth;

    float noise = fract(sin(dot(vec2(gid), vec2(12.9898, 78.233))) * 43758.5453) * noise_amplitude;
    depth = clamp(depth + noise, 0.0, 1.0);
    depth = pow(depth, 1.1);

    imageStore(depth_out, gid, vec4(depth, 0.0, 0.0, 1.0));
}
"""

MESH_GENERATION_COMPUTE_SHADER = """
#version 430
layout(local_size_x = 256, local_size_y = 1, local_size_z = 1) in;

uniform sampler2D depth_tex;
uniform sampler2D color_tex;
uniform int textured;

layout(std430, binding = 0) writeonly buffer Positions { float positions[]; };
layout(std430, binding = 1) writeonly buffer TexCoords { float tex_coords[]; };
layout(std430, binding = 2) writeonly buffer Colors { float colors[]; };
layout(std430, binding = 3) writeonly buffer Indices { uint indices[]; };

void main() {
    ivec2 size = textureSize(depth_tex, 0);
    uint width = uint(size.x);
    uint height = uint(size.y);
    uint tid = gl_GlobalInvocationID.x;

    if (tid >= width * height) {
        return;
    }

    uint x = tid % width;
    uint y = tid / width;
    float depth_value = texelFetch(depth_tex, ivec2(x, y), 0).r;

    positions[tid * 3u + 0u] = (float(x) / float(width - 1u)) * 2.0 - 1.0;
    positions[tid * 3u + 1u] = (1.0 - float(y) / float(height - 1u)) * 2.0 - 1.0;
    positions[tid * 3u + 2u] = depth_value * 2.0 - 1.0;

    tex_coords[tid * 2u + 0u] = float(x) / float(width - 1u);
    tex_coords[tid * 2u + 1u] = float(y) / float(height - 1u);

    if (textured != 0) {
        vec3 c = texelFetch(color_tex, ivec2(x, y), 0).rgb;
        colors[tid * 3u + 0u] = c.r;
        colors[tid * 3u + 1u] = c.g;
        colors[tid * 3u + 2u] = c.b;
    }

    if (x < width - 1u && y < height - 1u) {
        uint base = (y * (width - 1u) + x) * 6u;
        uint i0 = y * width + x;
        uint i1 = i0 + 1u;
        uint i2 = i0 + width;
        uint i3 = i2 + 1u;

        indices[base + 0u] = i0;
        indices[base + 1u] = i2;
        indices[base + 2u] = i1;

        indices[base + 3u] = i1;
        indices[base + 4u] = i2;
        indices[base + 5u] = i3;
    }
}
"""
